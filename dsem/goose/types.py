"""
Type aliases, type variables and protocols.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, TypeVar

if TYPE_CHECKING:
    from .epoch import EpochState
    from .kernel import ChainState, TransitionOutcome, TuningOutcome, WarmupOutcome

# simple type aliases

PyTree = Any
Array = Any
KeyArray = Any
KernelState = PyTree


class LogDensity(Protocol):
    """
    The target of the sampler: an unnormalized log-density on a flat, unconstrained
    parameter vector. :class:`dsem.model.LogPosterior` implements this protocol.
    """

    @property
    @abstractmethod
    def size(self) -> int:
        """The length of the parameter vector."""
        raise NotImplementedError

    @abstractmethod
    def value_and_grad(self, theta: Array) -> tuple[Array, Array]:
        """
        The log-density and its gradient. Must be jittable. Non-finite values are
        allowed and treated as divergent by the kernels.
        """
        raise NotImplementedError


class TuningInfo(Protocol):
    """Holds information about sampler tuning."""

    error_code: int
    time: int


class TransitionInfo(Protocol):
    """Holds information about MCMC transitions."""

    error_code: int
    """
    An error code defined in the error book of the kernel.
    0 if no errors occurred during the transition.
    """

    acceptance_prob: float
    """
    The acceptance probability of the proposal (HMC) or the average acceptance
    probability across the trajectory (NUTS).
    """

    position_moved: int
    """0 if the position did not move during the transition, 1 if it did."""

    divergent: bool
    """Whether the transition diverged, including non-finite densities."""


TKernelState = TypeVar("TKernelState", bound=KernelState)
TTransitionInfo = TypeVar("TTransitionInfo", bound=TransitionInfo)
TTuningInfo = TypeVar("TTuningInfo", bound=TuningInfo)


class Kernel(Protocol[TKernelState, TTransitionInfo, TTuningInfo]):
    """Protocol for a transition kernel."""

    error_book: ClassVar[dict[int, str]]
    """Maps error codes to error messages."""

    needs_history: ClassVar[bool] = False
    """Is set to true if the kernel expects the history for tuning."""

    identifier: str = ""
    """
    An identifier for the kernel object that is set by the :class:`.EngineBuilder`
    if it is an empty string.
    """

    @abstractmethod
    def set_log_density(self, log_density: LogDensity):
        """Sets the target density."""
        ...

    @abstractmethod
    def has_log_density(self) -> bool:
        """Whether the target density is set."""
        ...

    @abstractmethod
    def init_state(self, prng_key: KeyArray, chain_state: ChainState) -> KernelState:
        """Creates the initial kernel state."""

        raise NotImplementedError

    @abstractmethod
    def transition(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TransitionOutcome[TKernelState, TTransitionInfo]:
        """Handles one transition. Must be jittable."""

        raise NotImplementedError

    @abstractmethod
    def tune(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
        history: Array | None,
    ) -> TuningOutcome[TKernelState, TTuningInfo]:
        """
        Tunes the kernel after each adaptation epoch and returns the new kernel state.

        Must be jittable.

        Parameters
        ----------
        prng_key
            The key for JAX' pseudo-random number generator.
        kernel_state
            Current kernel state.
        chain_state
            Current chain state.
        epoch
            The epoch that just ended.
        history
            The positions of the epoch that just ended, shape ``(time, size)``.
            ``None`` if :attr:`.needs_history` is ``False``.
        """

        raise NotImplementedError

    @abstractmethod
    def start_epoch(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TKernelState:
        """Called at the beginning of an epoch. Must be jittable."""

        raise NotImplementedError

    @abstractmethod
    def end_epoch(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TKernelState:
        """Called at the end of an epoch. Must be jittable."""

        raise NotImplementedError

    @abstractmethod
    def end_warmup(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
    ) -> WarmupOutcome[TKernelState]:
        """
        Freezes the tuning parameters once the first posterior epoch is encountered,
        before :meth:`.start_epoch` is called. Must be jittable.
        """

        raise NotImplementedError
