"""
Exceptions and warnings.
"""


class DsemError(Exception):
    """Base class of all errors raised by :mod:`dsem`."""


class DatasetError(DsemError, ValueError):
    """
    The input dataset violates an invariant, e.g. fewer than two timepoints, a ragged
    observation array or non-finite observations.
    """


class ConfigurationError(DsemError, ValueError):
    """A sampler option is out of range. Raised before any model work begins."""


class DomainError(DsemError, ValueError):
    """A model density was evaluated at inputs where it is not finite."""


class NumericalError(DsemError, ArithmeticError):
    """
    The log-posterior or its gradient is not finite at the evaluated position.

    Inside the sampler, this condition is not raised but recorded as a divergent
    transition.
    """


class ConvergenceWarning(UserWarning):
    """
    The chains show signs of non-convergence (high R-hat, low effective sample size or
    divergent transitions). The samples are still returned.
    """
