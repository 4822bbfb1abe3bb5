"""
# No-U-Turn Sampler (NUTS)

An iterative, jittable NUTS with multinomial sampling of the proposal, following
Betancourt (2017), "A Conceptual Introduction to Hamiltonian Monte Carlo", and the
iterative tree building of Phan et al. (2019), "Composable Effects for Flexible and
Accelerated Probabilistic Programming in NumPyro".

The trajectory is doubled in a random direction until it makes a U-turn, diverges or
reaches the maximum tree depth. Each doubling integrates a new subtree leaf by leaf.
U-turns inside the subtree are detected with momentum checkpoints, so the memory use
grows with the tree depth rather than with the number of leaves.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

import jax
import jax.numpy as jnp

from .epoch import EpochState
from .integrator import (
    IntegratorState,
    ValueAndGrad,
    hamiltonian,
    leapfrog,
    sample_momentum,
    velocity,
)
from .kernel import (
    ChainState,
    DefaultTransitionInfo,
    HamiltonianAdaptationMixin,
    HamiltonianKernelState,
    HamiltonianTuningInfo,
    TransitionOutcome,
)
from .pytree import register_dataclass_as_pytree, where_leaves
from .types import Array, KeyArray

MAX_ENERGY_ERROR = 1000.0

NUTSKernelState = HamiltonianKernelState
NUTSTuningInfo = HamiltonianTuningInfo


@register_dataclass_as_pytree
@dataclass
class NUTSTransitionInfo(DefaultTransitionInfo):
    turning: bool
    """Whether the expansion was stopped because the trajectory started turning."""

    treedepth: int
    """The number of times the trajectory was expanded."""

    leapfrog: int
    """The number of computed leapfrog steps."""

    energy: float
    """The Hamiltonian at the start of the trajectory."""


@register_dataclass_as_pytree
@dataclass
class _Subtree:
    key: KeyArray
    leaf: IntegratorState
    proposal: IntegratorState
    log_weight: Array
    momentum_sum: Array
    momentum_ckpts: Array
    momentum_sum_ckpts: Array
    num_leaves: Array
    sum_accept_prob: Array
    turning: Array
    diverging: Array


@register_dataclass_as_pytree
@dataclass
class _Trajectory:
    key: KeyArray
    left: IntegratorState
    right: IntegratorState
    proposal: IntegratorState
    log_weight: Array
    momentum_sum: Array
    depth: Array
    num_leaves: Array
    sum_accept_prob: Array
    turning: Array
    diverging: Array


def _error_code(*args: bool) -> int:
    return jnp.array(args) @ (2 ** jnp.arange(len(args)))


def _is_turning(
    inv_mm: Array, momentum_left: Array, momentum_right: Array, momentum_sum: Array
) -> Array:
    """
    The generalized no-U-turn criterion, with the momentum sum centered at the
    midpoint of the two end momenta.
    """

    rho = momentum_sum - (momentum_left + momentum_right) / 2
    turning_left = jnp.dot(velocity(momentum_left, inv_mm), rho) <= 0
    turning_right = jnp.dot(velocity(momentum_right, inv_mm), rho) <= 0
    return turning_left | turning_right


def _checkpoint_range(leaf_idx: Array) -> tuple[Array, Array]:
    """
    The range of checkpoints to compare a leaf against.

    The upper end is the number of set bits of ``leaf_idx`` without the last bit,
    the number of checked subtrees is the number of trailing ones of ``leaf_idx``.
    For example, leaf 7 completes subtrees of 2, 4 and 8 leaves.
    """

    idx_max = jax.lax.population_count(leaf_idx >> 1)
    trailing_ones = jax.lax.population_count(leaf_idx ^ (leaf_idx + 1)) - 1
    idx_min = idx_max - trailing_ones + 1
    return idx_min, idx_max


def _is_iterative_turning(
    inv_mm: Array,
    momentum: Array,
    momentum_sum: Array,
    momentum_ckpts: Array,
    momentum_sum_ckpts: Array,
    idx_min: Array,
    idx_max: Array,
) -> Array:
    """Checks every subtree that the current leaf completes for a U-turn."""

    def cond_fun(carry):
        i, turning = carry
        return (i >= idx_min) & ~turning

    def body_fun(carry):
        i, _ = carry
        subtree_sum = momentum_sum - momentum_sum_ckpts[i] + momentum_ckpts[i]
        turning = _is_turning(inv_mm, momentum_ckpts[i], momentum, subtree_sum)
        return i - 1, turning

    _, turning = jax.lax.while_loop(cond_fun, body_fun, (idx_max, jnp.array(False)))
    return turning


def _build_subtree(
    prng_key: KeyArray,
    value_and_grad: ValueAndGrad,
    start: IntegratorState,
    depth: Array,
    step_size: Array,
    inv_mm: Array,
    initial_energy: Array,
    max_treedepth: int,
) -> _Subtree:
    """
    Integrates ``2 ** depth`` leaves from ``start`` with the signed ``step_size``.
    The proposal is sampled progressively with probability proportional to the
    weight of each leaf. Stops early on a U-turn or a divergence.
    """

    dtype = start.position.dtype
    size = start.position.size

    def cond_fun(tree: _Subtree):
        return (tree.num_leaves < 2**depth) & ~tree.turning & ~tree.diverging

    def body_fun(tree: _Subtree) -> _Subtree:
        key, select_key = jax.random.split(tree.key)

        leaf = leapfrog(value_and_grad, tree.leaf, step_size, inv_mm)
        energy_error = hamiltonian(leaf, inv_mm) - initial_energy
        energy_error = jnp.where(jnp.isfinite(energy_error), energy_error, jnp.inf)
        diverging = energy_error > MAX_ENERGY_ERROR

        leaf_log_weight = -energy_error
        log_weight = jnp.logaddexp(tree.log_weight, leaf_log_weight)
        log_u = jnp.log(jax.random.uniform(select_key, dtype=dtype))
        proposal = where_leaves(
            log_u < leaf_log_weight - log_weight, leaf, tree.proposal
        )

        momentum_sum = tree.momentum_sum + leaf.momentum

        leaf_idx = tree.num_leaves
        idx_min, idx_max = _checkpoint_range(leaf_idx)

        # checkpoints are the left ends of subtrees, i.e. the even leaves
        is_even = leaf_idx % 2 == 0
        momentum_ckpts = jnp.where(
            is_even,
            tree.momentum_ckpts.at[idx_max].set(leaf.momentum),
            tree.momentum_ckpts,
        )
        momentum_sum_ckpts = jnp.where(
            is_even,
            tree.momentum_sum_ckpts.at[idx_max].set(momentum_sum),
            tree.momentum_sum_ckpts,
        )

        turning = _is_iterative_turning(
            inv_mm,
            leaf.momentum,
            momentum_sum,
            momentum_ckpts,
            momentum_sum_ckpts,
            idx_min,
            idx_max,
        )

        accept_prob = jnp.minimum(1.0, jnp.exp(-energy_error))

        return _Subtree(
            key=key,
            leaf=leaf,
            proposal=proposal,
            log_weight=log_weight,
            momentum_sum=momentum_sum,
            momentum_ckpts=momentum_ckpts,
            momentum_sum_ckpts=momentum_sum_ckpts,
            num_leaves=leaf_idx + 1,
            sum_accept_prob=tree.sum_accept_prob + accept_prob,
            turning=turning,
            diverging=diverging,
        )

    ckpts = jnp.zeros((max(max_treedepth, 1), size), dtype=dtype)

    tree = _Subtree(
        key=prng_key,
        leaf=start,
        proposal=start,
        log_weight=jnp.array(-jnp.inf, dtype=dtype),
        momentum_sum=jnp.zeros_like(start.momentum),
        momentum_ckpts=ckpts,
        momentum_sum_ckpts=ckpts,
        num_leaves=jnp.array(0, dtype=jnp.int32),
        sum_accept_prob=jnp.array(0.0, dtype=dtype),
        turning=jnp.array(False),
        diverging=jnp.array(False),
    )

    return jax.lax.while_loop(cond_fun, body_fun, tree)


def nuts_trajectory(
    prng_key: KeyArray,
    value_and_grad: ValueAndGrad,
    start: IntegratorState,
    step_size: Array,
    inv_mm: Array,
    max_treedepth: int,
) -> tuple[_Trajectory, Array]:
    """
    Builds a NUTS trajectory from ``start``. Returns the final trajectory, whose
    ``proposal`` is the next state of the chain, and the initial energy.
    """

    dtype = start.position.dtype
    initial_energy = hamiltonian(start, inv_mm)

    def cond_fun(traj: _Trajectory):
        return (traj.depth < max_treedepth) & ~traj.turning & ~traj.diverging

    def body_fun(traj: _Trajectory) -> _Trajectory:
        key, direction_key, subtree_key, merge_key = jax.random.split(traj.key, 4)

        going_right = jax.random.bernoulli(direction_key)
        edge = where_leaves(going_right, traj.right, traj.left)
        signed_step_size = jnp.where(going_right, step_size, -step_size)

        subtree = _build_subtree(
            subtree_key,
            value_and_grad,
            edge,
            traj.depth,
            signed_step_size,
            inv_mm,
            initial_energy,
            max_treedepth,
        )

        # biased progressive sampling favors the new subtree
        usable = ~subtree.turning & ~subtree.diverging
        merge_prob = jnp.minimum(1.0, jnp.exp(subtree.log_weight - traj.log_weight))
        merge_prob = jnp.where(usable, merge_prob, 0.0)
        take = jax.random.uniform(merge_key, dtype=dtype) < merge_prob
        proposal = where_leaves(take, subtree.proposal, traj.proposal)

        left = where_leaves(going_right, traj.left, subtree.leaf)
        right = where_leaves(going_right, subtree.leaf, traj.right)
        momentum_sum = traj.momentum_sum + subtree.momentum_sum

        turning = subtree.turning | _is_turning(
            inv_mm, left.momentum, right.momentum, momentum_sum
        )

        return _Trajectory(
            key=key,
            left=left,
            right=right,
            proposal=proposal,
            log_weight=jnp.logaddexp(traj.log_weight, subtree.log_weight),
            momentum_sum=momentum_sum,
            depth=traj.depth + 1,
            num_leaves=traj.num_leaves + subtree.num_leaves,
            sum_accept_prob=traj.sum_accept_prob + subtree.sum_accept_prob,
            turning=turning,
            diverging=subtree.diverging,
        )

    traj = _Trajectory(
        key=prng_key,
        left=start,
        right=start,
        proposal=start,
        log_weight=jnp.array(0.0, dtype=dtype),
        momentum_sum=start.momentum,
        depth=jnp.array(0, dtype=jnp.int32),
        num_leaves=jnp.array(0, dtype=jnp.int32),
        sum_accept_prob=jnp.array(0.0, dtype=dtype),
        turning=jnp.array(False),
        diverging=jnp.array(False),
    )

    return jax.lax.while_loop(cond_fun, body_fun, traj), initial_energy


class NUTSKernel(HamiltonianAdaptationMixin[NUTSTransitionInfo]):
    """
    A NUTS kernel with dual averaging and an inverse mass matrix tuner, implementing
    the :class:`.Kernel` protocol.

    A trajectory diverges if the energy error of a leaf exceeds 1000 or is not
    finite. The states of the diverging subtree are never selected, so divergences
    are effectively rejections.

    Parameters
    ----------
    initial_step_size
        If ``None``, the initial step size is found with
        :func:`.find_reasonable_step_size`.
    initial_inverse_mass_matrix
        If ``None``, the identity is used.
    max_treedepth
        The maximum number of trajectory doublings.
    da_target_accept
        Target acceptance probability of the dual averaging.
    mm_diag
        Whether to estimate a diagonal or a dense inverse mass matrix.
    """

    error_book: ClassVar[dict[int, str]] = {
        0: "no errors",
        1: "divergent transition",
        2: "maximum tree depth",
        3: "divergent transition + maximum tree depth",
    }

    identifier: str = ""

    def __init__(
        self,
        initial_step_size: float | None = None,
        initial_inverse_mass_matrix: Array | None = None,
        max_treedepth: int = 10,
        da_target_accept: float = 0.8,
        da_gamma: float = 0.05,
        da_kappa: float = 0.75,
        da_t0: int = 10,
        mm_diag: bool = True,
    ):
        self._log_density = None

        self.initial_step_size = initial_step_size
        self.initial_inverse_mass_matrix = initial_inverse_mass_matrix
        self.max_treedepth = max_treedepth

        self.da_target_accept = da_target_accept
        self.da_gamma = da_gamma
        self.da_kappa = da_kappa
        self.da_t0 = da_t0

        self.mm_diag = mm_diag

    def _standard_transition(
        self,
        prng_key: KeyArray,
        kernel_state: NUTSKernelState,
        chain_state: ChainState,
        epoch: EpochState,
    ) -> TransitionOutcome[NUTSKernelState, NUTSTransitionInfo]:
        """A NUTS transition with the current step size and metric."""

        inv_mm = kernel_state.inverse_mass_matrix
        momentum_key, trajectory_key = jax.random.split(prng_key)

        momentum = sample_momentum(momentum_key, chain_state.position, inv_mm)
        start = IntegratorState(
            chain_state.position, momentum, chain_state.log_prob, chain_state.grad
        )

        traj, initial_energy = nuts_trajectory(
            trajectory_key,
            self.log_density.value_and_grad,
            start,
            kernel_state.step_size,
            inv_mm,
            self.max_treedepth,
        )

        proposal = traj.proposal
        new_state = ChainState(proposal.position, proposal.log_prob, proposal.grad)

        hit_max_treedepth = (
            (traj.depth >= self.max_treedepth) & ~traj.turning & ~traj.diverging
        )
        moved = jnp.any(proposal.position != chain_state.position)
        num_leaves = jnp.maximum(traj.num_leaves, 1)

        info = NUTSTransitionInfo(
            error_code=_error_code(traj.diverging, hit_max_treedepth),
            acceptance_prob=traj.sum_accept_prob / num_leaves,
            position_moved=1 * moved,
            divergent=traj.diverging,
            turning=traj.turning,
            treedepth=traj.depth,
            leapfrog=traj.num_leaves,
            energy=initial_energy,
        )

        return TransitionOutcome(info, kernel_state, new_state)
