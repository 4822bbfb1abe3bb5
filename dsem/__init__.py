"""
Dynamic structural equation models with a from-scratch Hamiltonian sampler.
"""

from .__version__ import __version__, __version_info__  # isort: skip

from . import goose, model
from .config import InitStrategy, SamplerConfig
from .data import Dataset, simulate
from .errors import (
    ConfigurationError,
    ConvergenceWarning,
    DatasetError,
    DomainError,
    DsemError,
    NumericalError,
)
from .fit import FitResult, fit
from .logging import reset_logger, setup_logger

__all__ = [
    "ConfigurationError",
    "ConvergenceWarning",
    "Dataset",
    "DatasetError",
    "DomainError",
    "DsemError",
    "FitResult",
    "InitStrategy",
    "NumericalError",
    "SamplerConfig",
    "fit",
    "goose",
    "model",
    "reset_logger",
    "setup_logger",
    "simulate",
]

# because logger setup takes place after importing the submodules, it only affects
# log messages emitted at runtime
setup_logger()
