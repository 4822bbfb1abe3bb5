"""
MCMC engine builder

The builder assembles the components needed by the MCMC engine step by step and
returns an engine in a well-defined state.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable

import jax
import jax.numpy as jnp
import numpy as np

from .engine import Engine
from .epoch import EpochConfig, EpochManager, EpochType
from .kernel import ChainState
from .pytree import stack_leaves
from .types import Array, Kernel, KeyArray, LogDensity
from .warmup import stan_epochs

logger = logging.getLogger(__name__)

MAX_JITTED_SAMPLE_DURATION = 100


def _jitted_sample_duration(durations: Iterable[int], max_duration: int) -> int:
    """
    The largest divisor of the greatest common divisor of ``durations`` that does
    not exceed ``max_duration``.
    """

    gcd = math.gcd(*durations)
    return max(d for d in range(1, min(gcd, max_duration) + 1) if gcd % d == 0)


class EngineBuilder:
    """
    The :class:`.EngineBuilder` is used to construct an MCMC :class:`.Engine`.

    .. rubric:: Workflow

    #. Create a builder with :class:`.EngineBuilder`.
    #. Set the number of warmup and posterior iterations with :meth:`.set_duration`.
    #. Set the target density with :meth:`.set_log_density`.
    #. Set the initial values with :meth:`.set_initial_values`.
    #. Set the kernel with :meth:`.set_kernel`.
    #. Build an :class:`.Engine` with :meth:`.build`.

    Parameters
    ----------
    seed
        Either an int or a key generated with ``jax.random.PRNGKey``.
    num_chains
        The number of chains.

    Examples
    --------
    >>> from dsem.model import LogPosterior, dsem_graph
    >>> record = {"N_obs": 5, "N_subj": 1, "Y": [[5, 5, 5, 5, 5]]}
    >>> data = dsem.Dataset.from_record(record)
    >>> log_posterior = LogPosterior(dsem_graph(data))

    >>> builder = gs.EngineBuilder(seed=1, num_chains=2)
    >>> builder.set_duration(warmup_duration=100, posterior_duration=100)
    >>> builder.set_log_density(log_posterior)
    >>> builder.set_initial_values(jnp.zeros(log_posterior.size))
    >>> builder.set_kernel(gs.NUTSKernel())
    >>> builder.show_progress = False
    >>> engine = builder.build()
    """

    def __init__(self, seed: int | KeyArray, num_chains: int):
        if isinstance(seed, (int, np.integer)):
            key = jax.random.PRNGKey(int(seed))
        elif isinstance(seed, jax.Array):
            key = seed
        else:
            raise TypeError(
                "Provide either an int or a key from jax.random.PRNGKey as seed."
            )

        if num_chains < 1:
            raise ValueError("num_chains must be positive")

        self._engine_key: KeyArray = key
        self._num_chains = num_chains
        self._kernel: Kernel | None = None
        self._log_density: LogDensity | None = None
        self._positions: Array | None = None
        self._epochs: EpochManager | None = None
        self._cancel: threading.Event | None = None

        self.show_progress: bool = True
        """Whether to show progress bars during sampling."""

        self.max_jitted_sample_duration: int = MAX_JITTED_SAMPLE_DURATION
        """
        Upper bound for the number of transitions compiled into one chunk. Smaller
        chunks react faster to cancellation.
        """

    @property
    def num_chains(self) -> int:
        return self._num_chains

    @property
    def engine_seed(self) -> KeyArray:
        """The seed for the engine's pseudo-random number generation."""
        return self._engine_key

    def set_engine_seed(self, seed: int | KeyArray):
        if jnp.isscalar(seed):
            self._engine_key = jax.random.PRNGKey(int(seed))
        else:
            self._engine_key = seed

    def set_kernel(self, kernel: Kernel):
        """Sets the transition kernel."""
        self._kernel = kernel

    @property
    def kernel(self) -> Kernel | None:
        return self._kernel

    def set_log_density(self, log_density: LogDensity):
        """Sets the target density, e.g. a :class:`~dsem.model.LogPosterior`."""
        self._log_density = log_density

    def set_initial_values(self, positions: Array, multiple_chains: bool = False):
        """
        Sets the initial unconstrained positions.

        If ``multiple_chains`` is false, ``positions`` is a single position that is
        used for every chain. Otherwise, the first axis of ``positions`` refers to
        the chain.
        """

        positions = jnp.asarray(positions)

        if not multiple_chains:
            positions = stack_leaves([positions] * self._num_chains)

        if positions.shape[0] != self._num_chains:
            raise ValueError(
                f"Expected initial values for {self._num_chains} chains, "
                f"got {positions.shape[0]}"
            )

        self._positions = positions

    def set_cancel_event(self, cancel: threading.Event | None):
        """Sets an event that stops the sampling between two chunks when set."""
        self._cancel = cancel

    def set_epochs(self, epochs: Iterable[EpochConfig]):
        self._epochs = EpochManager(epochs)

    def set_duration(
        self,
        warmup_duration: int,
        posterior_duration: int,
        term_duration: int = 50,
        thinning_posterior: int = 1,
    ):
        """Sets the epochs using :func:`.stan_epochs`."""
        epochs = stan_epochs(
            warmup_duration,
            posterior_duration,
            term_duration=term_duration,
            thinning_posterior=thinning_posterior,
        )
        self._epochs = EpochManager(epochs)

    @property
    def epochs(self) -> tuple[EpochConfig, ...]:
        if self._epochs is None:
            return ()
        return self._epochs.configs

    def build(self) -> Engine:
        """Builds the MCMC engine with the provided setup."""

        if self._epochs is None:
            raise RuntimeError("Epochs must be set")

        if self._log_density is None:
            raise RuntimeError("Log-density must be set")

        if self._kernel is None:
            raise RuntimeError("Kernel must be set")

        if self._positions is None:
            raise RuntimeError("Initial values must be set")

        if self._positions.shape[-1] != self._log_density.size:
            raise RuntimeError(
                f"Initial values have size {self._positions.shape[-1]}, "
                f"the log-density expects {self._log_density.size}"
            )

        epochs = self._epochs.configs

        # posterior epochs may end with a shorter chunk
        durations = [e.duration for e in epochs if EpochType.is_adaptation(e.type)]
        if not durations:
            durations = [e.duration for e in epochs[1:]]

        jit_duration = _jitted_sample_duration(
            durations, self.max_jitted_sample_duration
        )

        seeds = self._engine_key
        if seeds.shape == (2,):
            seeds = jax.random.split(seeds, self._num_chains)
        if seeds.shape != (self._num_chains, 2):
            raise RuntimeError(
                f"MCMC seed has the wrong dimensions {seeds.shape}. "
                f"Expected is {(self._num_chains, 2)}"
            )

        if not self._kernel.has_log_density():
            self._kernel.set_log_density(self._log_density)

        if not self._kernel.identifier:
            self._kernel.identifier = "kernel_00"

        chain_states = jax.vmap(
            lambda position: ChainState.from_position(self._log_density, position)
        )(self._positions)

        return Engine(
            seeds=seeds,
            chain_states=chain_states,
            kernel=self._kernel,
            epoch_configs=epochs,
            jitted_sample_duration=jit_duration,
            show_progress=self.show_progress,
            cancel=self._cancel,
        )
