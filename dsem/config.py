"""
Sampler configuration.
"""

from __future__ import annotations

import logging
import numbers
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class InitStrategy(str, Enum):
    """How the unconstrained parameters of each chain are initialized."""

    ZERO = "zero"
    """All unconstrained parameters start at zero."""

    RANDOM_JITTER = "random-jitter"
    """Each unconstrained parameter starts uniformly in ``(-2, 2)``, per chain."""


class KernelType(str, Enum):
    NUTS = "nuts"
    HMC = "hmc"


@dataclass(frozen=True)
class SamplerConfig:
    """
    Options for :func:`dsem.fit`.

    The configuration is checked with :meth:`.validate` before any data or model work
    starts.

    Parameters
    ----------
    chains
        Number of independent chains.
    warmup_iterations
        Number of warmup (adaptation) iterations per chain. Warmup draws are discarded.
    sampling_iterations
        Number of retained iterations per chain.
    target_acceptance
        Target of the dual averaging step size adaptation.
    seed
        Seed of the pseudo-random number generator. Identical seeds and inputs produce
        identical draws.
    init_strategy
        ``"zero"`` or ``"random-jitter"``.
    kernel
        ``"nuts"`` for the No-U-Turn sampler, ``"hmc"`` for static HMC with
        ``num_integration_steps`` leapfrog steps.
    max_treedepth
        Maximum number of trajectory doublings of the NUTS kernel.
    num_integration_steps
        Number of leapfrog steps of the HMC kernel.
    dense_mass_matrix
        Whether to adapt a dense instead of a diagonal inverse mass matrix.
    thinning
        Keep every ``thinning``-th posterior draw. Must divide
        ``sampling_iterations``.
    rhat_threshold
        R-hat values above this threshold trigger a :class:`.ConvergenceWarning`.
    min_ess_ratio
        Bulk ESS below ``min_ess_ratio * chains * draws`` triggers a
        :class:`.ConvergenceWarning`.
    random_effects
        Whether subject-level deviations are modeled. ``None`` enables them for panels
        with more than one subject.
    show_progress
        Whether to log epochs and show progress bars.
    """

    chains: int = 4
    warmup_iterations: int = 1000
    sampling_iterations: int = 1000
    target_acceptance: float = 0.8
    seed: int = 0
    init_strategy: InitStrategy | str = InitStrategy.RANDOM_JITTER
    kernel: KernelType | str = KernelType.NUTS
    max_treedepth: int = 10
    num_integration_steps: int = 10
    dense_mass_matrix: bool = False
    thinning: int = 1
    rhat_threshold: float = 1.01
    min_ess_ratio: float = 0.1
    random_effects: bool | None = None
    show_progress: bool = True

    def validate(self) -> SamplerConfig:
        """
        Checks all options and returns a copy with normalized enum values.

        Raises
        ------
        ConfigurationError
            If an option is out of range.
        """

        def _int(name: str, minimum: int | None = None) -> int:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
            if minimum is not None and value < minimum:
                raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
            return value

        _int("chains", 1)
        _int("warmup_iterations", 0)
        sampling = _int("sampling_iterations", 1)
        _int("max_treedepth", 1)
        _int("num_integration_steps", 1)
        thinning = _int("thinning", 1)
        _int("seed")

        if sampling % thinning != 0:
            raise ConfigurationError(
                f"sampling_iterations ({sampling}) must be a multiple of "
                f"thinning ({thinning})"
            )

        for name in ("target_acceptance", "rhat_threshold", "min_ess_ratio"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")

        if not 0.0 < self.target_acceptance < 1.0:
            raise ConfigurationError(
                f"target_acceptance must lie in (0, 1), got {self.target_acceptance}"
            )

        if self.rhat_threshold <= 1.0:
            raise ConfigurationError(
                f"rhat_threshold must be > 1, got {self.rhat_threshold}"
            )

        if not 0.0 <= self.min_ess_ratio <= 1.0:
            raise ConfigurationError(
                f"min_ess_ratio must lie in [0, 1], got {self.min_ess_ratio}"
            )

        try:
            init_strategy = InitStrategy(self.init_strategy)
        except ValueError:
            options = ", ".join(s.value for s in InitStrategy)
            raise ConfigurationError(
                f"init_strategy must be one of {options}, got {self.init_strategy!r}"
            ) from None

        try:
            kernel = KernelType(self.kernel)
        except ValueError:
            options = ", ".join(k.value for k in KernelType)
            raise ConfigurationError(
                f"kernel must be one of {options}, got {self.kernel!r}"
            ) from None

        fields = asdict(self) | {"init_strategy": init_strategy, "kernel": kernel}
        return SamplerConfig(**fields)

    @classmethod
    def from_dict(cls, options: dict[str, Any]) -> SamplerConfig:
        """Builds a validated configuration, rejecting unknown option names."""
        unknown = set(options) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration option(s): {', '.join(sorted(unknown))}"
            )
        return cls(**options).validate()
