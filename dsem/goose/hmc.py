"""
# Hamiltonian Monte Carlo (HMC)

HMC with a fixed number of leapfrog steps per transition. The step size and the
inverse mass matrix are tuned during warmup like for the :class:`.NUTSKernel`.
"""

from dataclasses import dataclass
from typing import ClassVar

import jax
import jax.numpy as jnp

from .epoch import EpochState
from .integrator import IntegratorState, hamiltonian, integrate, sample_momentum
from .kernel import (
    ChainState,
    DefaultTransitionInfo,
    HamiltonianAdaptationMixin,
    HamiltonianKernelState,
    HamiltonianTuningInfo,
    TransitionOutcome,
)
from .pytree import register_dataclass_as_pytree
from .types import Array, KeyArray

MAX_ENERGY_ERROR = 1000.0

HMCKernelState = HamiltonianKernelState
HMCTuningInfo = HamiltonianTuningInfo


@register_dataclass_as_pytree
@dataclass
class HMCTransitionInfo(DefaultTransitionInfo):
    energy_error: float
    """The energy of the proposal minus the energy of the start."""


class HMCKernel(HamiltonianAdaptationMixin[HMCTransitionInfo]):
    """
    An HMC kernel with dual averaging and an inverse mass matrix tuner, implementing
    the :class:`.Kernel` protocol.

    A transition is divergent if the energy error exceeds 1000 or the proposal has a
    non-finite energy. Divergent proposals are rejected.

    Parameters
    ----------
    num_integration_steps
        Number of leapfrog steps per transition.
    initial_step_size
        If ``None``, the initial step size is found with
        :func:`.find_reasonable_step_size`.
    initial_inverse_mass_matrix
        If ``None``, the identity is used.
    da_target_accept
        Target acceptance probability of the dual averaging.
    mm_diag
        Whether to estimate a diagonal or a dense inverse mass matrix.
    """

    error_book: ClassVar[dict[int, str]] = {
        0: "no errors",
        1: "divergent transition",
    }

    identifier: str = ""

    def __init__(
        self,
        num_integration_steps: int = 10,
        initial_step_size: float | None = None,
        initial_inverse_mass_matrix: Array | None = None,
        da_target_accept: float = 0.8,
        da_gamma: float = 0.05,
        da_kappa: float = 0.75,
        da_t0: int = 10,
        mm_diag: bool = True,
    ):
        self._log_density = None

        self.num_integration_steps = num_integration_steps
        self.initial_step_size = initial_step_size
        self.initial_inverse_mass_matrix = initial_inverse_mass_matrix

        self.da_target_accept = da_target_accept
        self.da_gamma = da_gamma
        self.da_kappa = da_kappa
        self.da_t0 = da_t0

        self.mm_diag = mm_diag

    def _standard_transition(
        self,
        prng_key: KeyArray,
        kernel_state: HMCKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TransitionOutcome[HMCKernelState, HMCTransitionInfo]:
        """A Metropolis-adjusted transition along a trajectory of fixed length."""

        inv_mm = kernel_state.inverse_mass_matrix
        momentum_key, accept_key = jax.random.split(prng_key)

        momentum = sample_momentum(momentum_key, chain_state.position, inv_mm)
        start = IntegratorState(
            chain_state.position, momentum, chain_state.log_prob, chain_state.grad
        )

        end = integrate(
            self.log_density.value_and_grad,
            start,
            kernel_state.step_size,
            inv_mm,
            self.num_integration_steps,
        )

        energy_error = hamiltonian(end, inv_mm) - hamiltonian(start, inv_mm)
        energy_error = jnp.where(jnp.isfinite(energy_error), energy_error, jnp.inf)
        divergent = energy_error > MAX_ENERGY_ERROR

        acceptance_prob = jnp.minimum(1.0, jnp.exp(-energy_error))
        accepted = (jax.random.uniform(accept_key) < acceptance_prob) & ~divergent

        new_state = ChainState(
            position=jnp.where(accepted, end.position, chain_state.position),
            log_prob=jnp.where(accepted, end.log_prob, chain_state.log_prob),
            grad=jnp.where(accepted, end.grad, chain_state.grad),
        )

        info = HMCTransitionInfo(
            error_code=1 * divergent,
            acceptance_prob=acceptance_prob,
            position_moved=1 * accepted,
            divergent=divergent,
            energy_error=energy_error,
        )

        return TransitionOutcome(info, kernel_state, new_state)
