"""
Kernel-related state, info, outcome and mixin classes.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Generic

import jax
import jax.numpy as jnp

from .da import da_finalize, da_init, da_step
from .epoch import EpochState, EpochType
from .mm import tune_inv_mm_diag, tune_inv_mm_full
from .pytree import register_dataclass_as_pytree
from .step_size import find_reasonable_step_size
from .types import (
    Array,
    KeyArray,
    LogDensity,
    TKernelState,
    TTransitionInfo,
    TTuningInfo,
)


@register_dataclass_as_pytree
@dataclass
class ChainState:
    """
    The state of one chain: the unconstrained position and the cached log-density
    and gradient at that position.
    """

    position: Array
    log_prob: Array
    grad: Array

    @classmethod
    def from_position(cls, log_density: LogDensity, position: Array) -> ChainState:
        log_prob, grad = log_density.value_and_grad(position)
        return cls(position, log_prob, grad)


@register_dataclass_as_pytree
@dataclass
class DefaultTransitionInfo:
    """A default template for a transition information object."""

    error_code: int
    """Error code of the transition, see the error book of the kernel."""
    acceptance_prob: float
    """Acceptance statistic of the transition."""
    position_moved: int
    """1 if the chain moved to a new position, 0 otherwise."""
    divergent: bool
    """Whether the trajectory diverged."""


@register_dataclass_as_pytree
@dataclass
class DefaultTuningInfo:
    """A default template for a tuning information object."""

    error_code: int
    """Error code of the tuning, 0 if the tuning succeeded."""
    time: int
    """MCMC time when the tuning happened."""


@register_dataclass_as_pytree
@dataclass
class HamiltonianTuningInfo(DefaultTuningInfo):
    step_size: float
    """The step size after tuning."""


@register_dataclass_as_pytree
@dataclass
class TransitionOutcome(Generic[TKernelState, TTransitionInfo]):
    """The return value of :meth:`.Kernel.transition`."""

    info: TTransitionInfo
    kernel_state: TKernelState
    chain_state: ChainState


@register_dataclass_as_pytree
@dataclass
class TuningOutcome(Generic[TKernelState, TTuningInfo]):
    """The return value of :meth:`.Kernel.tune`."""

    info: TTuningInfo
    kernel_state: TKernelState


@register_dataclass_as_pytree
@dataclass
class WarmupOutcome(Generic[TKernelState]):
    """The return value of :meth:`.Kernel.end_warmup`."""

    error_code: int
    """0 if the tuned parameters are usable, 1 if the step size collapsed."""
    kernel_state: TKernelState


@register_dataclass_as_pytree
@dataclass
class HamiltonianKernelState:
    """
    The state of a Hamiltonian kernel, implementing the :class:`.DAKernelState`
    protocol. The inverse mass matrix is a vector for a diagonal metric and a matrix
    for a dense one.
    """

    step_size: float
    inverse_mass_matrix: Array
    error_sum: float = field(init=False)
    log_avg_step_size: float = field(init=False)
    mu: float = field(init=False)

    def __post_init__(self):
        da_init(self)


class LogDensityMixin:
    """A mixin holding the target density of a kernel."""

    _log_density: LogDensity | None

    @property
    def log_density(self) -> LogDensity:
        """Returns the target density if it is set. Raises an error otherwise."""

        if self._log_density is None:
            raise RuntimeError("Log-density not set")

        return self._log_density

    def set_log_density(self, log_density: LogDensity):
        self._log_density = log_density

    def has_log_density(self) -> bool:
        return self._log_density is not None


class TransitionMixin(Generic[TKernelState, TTransitionInfo]):
    """
    An abstract mixin dispatching between a transition with and without adaptation.
    """

    def transition(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TransitionOutcome[TKernelState, TTransitionInfo]:
        is_adaptation = EpochType.is_adaptation(epoch.config.type)

        outcome: TransitionOutcome[TKernelState, TTransitionInfo] = jax.lax.cond(
            is_adaptation,
            self._adaptive_transition,
            self._standard_transition,
            prng_key,
            kernel_state,
            chain_state,
            epoch,
        )

        return outcome

    @abstractmethod
    def _standard_transition(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TransitionOutcome[TKernelState, TTransitionInfo]:
        """A transition *outside* an adaptation epoch. Must be jittable."""

        raise NotImplementedError

    @abstractmethod
    def _adaptive_transition(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TransitionOutcome[TKernelState, TTransitionInfo]:
        """A transition *in* an adaptation epoch. Must be jittable."""

        raise NotImplementedError


class TuningMixin(Generic[TKernelState, TTuningInfo]):
    """
    An abstract mixin dispatching between the tuning after a slow and a fast
    adaptation epoch.
    """

    def tune(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
        history: Array | None,
    ) -> TuningOutcome[TKernelState, TTuningInfo]:
        is_slow = epoch.config.type == EpochType.SLOW_ADAPTATION

        outcome: TuningOutcome[TKernelState, TTuningInfo] = jax.lax.cond(
            is_slow,
            self._tune_slow,
            self._tune_fast,
            prng_key,
            kernel_state,
            chain_state,
            epoch,
            history,
        )

        return outcome

    @abstractmethod
    def _tune_fast(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
        history: Array | None,
    ) -> TuningOutcome[TKernelState, TTuningInfo]:
        """Tunes the kernel after a *fast* adaptation epoch. Must be jittable."""

        raise NotImplementedError

    @abstractmethod
    def _tune_slow(
        self,
        prng_key: KeyArray,
        kernel_state: TKernelState,
        chain_state: ChainState,
        epoch: EpochState,
        history: Array | None,
    ) -> TuningOutcome[TKernelState, TTuningInfo]:
        """Tunes the kernel after a *slow* adaptation epoch. Must be jittable."""

        raise NotImplementedError


class HamiltonianAdaptationMixin(
    LogDensityMixin,
    TransitionMixin[HamiltonianKernelState, TTransitionInfo],
    TuningMixin[HamiltonianKernelState, HamiltonianTuningInfo],
):
    """
    Warmup behavior shared by the Hamiltonian kernels: dual averaging of the step
    size in every adaptation epoch and estimation of the inverse mass matrix after
    every slow adaptation epoch.

    Subclasses implement :meth:`._standard_transition`. The attributes
    ``initial_step_size``, ``initial_inverse_mass_matrix``, ``da_target_accept``,
    ``da_gamma``, ``da_kappa``, ``da_t0`` and ``mm_diag`` are expected on the
    instance.
    """

    needs_history = True

    initial_step_size: float | None
    initial_inverse_mass_matrix: Array | None
    da_target_accept: float
    da_gamma: float
    da_kappa: float
    da_t0: int
    mm_diag: bool

    def _find_step_size(
        self,
        prng_key: KeyArray,
        chain_state: ChainState,
        inverse_mass_matrix: Array,
        initial_step_size: Array,
    ) -> Array:
        return find_reasonable_step_size(
            prng_key,
            self.log_density.value_and_grad,
            chain_state.position,
            chain_state.log_prob,
            chain_state.grad,
            inverse_mass_matrix,
            initial_step_size=initial_step_size,
            target_accept=self.da_target_accept,
        )

    def init_state(
        self, prng_key: KeyArray, chain_state: ChainState
    ) -> HamiltonianKernelState:
        """
        Initializes the kernel state with an identity inverse mass matrix and a
        reasonable step size, unless explicit values were provided.
        """

        position = chain_state.position

        if self.initial_inverse_mass_matrix is None:
            if self.mm_diag:
                inverse_mass_matrix = jnp.ones_like(position)
            else:
                inverse_mass_matrix = jnp.eye(position.size, dtype=position.dtype)
        else:
            inverse_mass_matrix = jnp.asarray(
                self.initial_inverse_mass_matrix, dtype=position.dtype
            )

        if self.initial_step_size is None:
            step_size = self._find_step_size(
                prng_key, chain_state, inverse_mass_matrix, jnp.asarray(1.0)
            )
        else:
            step_size = jnp.asarray(self.initial_step_size, dtype=position.dtype)

        return HamiltonianKernelState(step_size, inverse_mass_matrix)

    def _adaptive_transition(
        self,
        prng_key: KeyArray,
        kernel_state: HamiltonianKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TransitionOutcome[HamiltonianKernelState, TTransitionInfo]:
        """A transition followed by a dual averaging update."""

        outcome = self._standard_transition(prng_key, kernel_state, chain_state, epoch)

        da_step(
            outcome.kernel_state,
            outcome.info.acceptance_prob,
            epoch.time_in_epoch,
            self.da_target_accept,
            self.da_gamma,
            self.da_kappa,
            self.da_t0,
        )

        return outcome

    def _tune_fast(
        self,
        prng_key: KeyArray,
        kernel_state: HamiltonianKernelState,
        chain_state: ChainState,
        epoch: EpochState,
        history: Array | None = None,
    ) -> TuningOutcome[HamiltonianKernelState, HamiltonianTuningInfo]:
        """Records the step size. The dual averaging ends in :meth:`.end_epoch`."""

        info = HamiltonianTuningInfo(
            error_code=jnp.zeros((), dtype=jnp.int32),
            time=epoch.time,
            step_size=kernel_state.step_size,
        )
        return TuningOutcome(info, kernel_state)

    def _tune_slow(
        self,
        prng_key: KeyArray,
        kernel_state: HamiltonianKernelState,
        chain_state: ChainState,
        epoch: EpochState,
        history: Array | None = None,
    ) -> TuningOutcome[HamiltonianKernelState, HamiltonianTuningInfo]:
        """
        Estimates the inverse mass matrix from the positions of the last epoch and
        searches a new initial step size for the changed metric.
        """

        if history is not None:
            if self.mm_diag:
                new_inv_mm = tune_inv_mm_diag(history)
            else:
                new_inv_mm = tune_inv_mm_full(history)

            new_inv_mm = new_inv_mm.astype(kernel_state.inverse_mass_matrix.dtype)
            finite = jnp.all(jnp.isfinite(new_inv_mm))

            kernel_state.inverse_mass_matrix = jnp.where(
                finite, new_inv_mm, kernel_state.inverse_mass_matrix
            )
            kernel_state.step_size = self._find_step_size(
                prng_key,
                chain_state,
                kernel_state.inverse_mass_matrix,
                kernel_state.step_size,
            )

            outcome = self._tune_fast(prng_key, kernel_state, chain_state, epoch)
            outcome.info.error_code = jnp.where(finite, 0, 1).astype(jnp.int32)
            return outcome

        return self._tune_fast(prng_key, kernel_state, chain_state, epoch)

    def start_epoch(
        self,
        prng_key: KeyArray,
        kernel_state: HamiltonianKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> HamiltonianKernelState:
        """Restarts the dual averaging."""

        da_init(kernel_state)
        return kernel_state

    def end_epoch(
        self,
        prng_key: KeyArray,
        kernel_state: HamiltonianKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> HamiltonianKernelState:
        """Sets the step size found by the dual averaging."""

        da_finalize(kernel_state)
        return kernel_state

    def end_warmup(
        self,
        prng_key: KeyArray,
        kernel_state: HamiltonianKernelState,
        chain_state: ChainState,
    ) -> WarmupOutcome[HamiltonianKernelState]:
        """
        Checks the tuned step size. A step size that is not finite or not positive
        is reported with error code 1 and replaced by a fresh heuristic search.
        """

        step_size = kernel_state.step_size
        usable = jnp.isfinite(step_size) & (step_size > 0)

        fallback = self._find_step_size(
            prng_key,
            chain_state,
            kernel_state.inverse_mass_matrix,
            jnp.ones_like(step_size),
        )

        kernel_state.step_size = jnp.where(usable, step_size, fallback)
        error_code = jnp.where(usable, 0, 1)
        return WarmupOutcome(error_code=error_code, kernel_state=kernel_state)
