"""
Goose MCMC engine: NUTS and HMC kernels with Stan-style warmup.
"""

from .builder import EngineBuilder
from .engine import Engine, SamplingResults
from .epoch import EpochConfig, EpochType
from .hmc import HMCKernel
from .kernel import ChainState
from .nuts import NUTSKernel
from .summary import Summary
from .types import Kernel, LogDensity
from .warmup import stan_epochs

__all__ = [
    "ChainState",
    "Engine",
    "EngineBuilder",
    "EpochConfig",
    "EpochType",
    "HMCKernel",
    "Kernel",
    "LogDensity",
    "NUTSKernel",
    "SamplingResults",
    "Summary",
    "stan_epochs",
]
