"""
# Initial step size

The heuristic of Hoffman and Gelman (2014, Algorithm 4): starting from an initial
guess, the step size is doubled or halved until the acceptance probability of a
single leapfrog step crosses the target.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

from .integrator import (
    IntegratorState,
    ValueAndGrad,
    hamiltonian,
    leapfrog,
    sample_momentum,
)
from .types import Array, KeyArray

MAX_HALVINGS_OR_DOUBLINGS = 100


def single_step_acceptance(
    prng_key: KeyArray,
    value_and_grad: ValueAndGrad,
    position: Array,
    log_prob: Array,
    grad: Array,
    step_size: Array,
    inv_mm: Array,
) -> Array:
    """
    The Metropolis acceptance probability of one leapfrog step from ``position``
    with a fresh momentum. Non-finite energies give 0.
    """

    momentum = sample_momentum(prng_key, position, inv_mm)
    state = IntegratorState(position, momentum, log_prob, grad)
    proposal = leapfrog(value_and_grad, state, step_size, inv_mm)

    delta = hamiltonian(state, inv_mm) - hamiltonian(proposal, inv_mm)
    prob = jnp.minimum(1.0, jnp.exp(delta))
    return jnp.where(jnp.isfinite(prob), prob, 0.0)


def find_reasonable_step_size(
    prng_key: KeyArray,
    value_and_grad: ValueAndGrad,
    position: Array,
    log_prob: Array,
    grad: Array,
    inv_mm: Array,
    initial_step_size: Array = 1.0,
    target_accept: float = 0.8,
) -> Array:
    """
    Finds a step size near the boundary where the one-step acceptance probability
    crosses ``target_accept``. Jittable.

    The direction (doubling or halving) is determined by the first trial. The search
    stops as soon as the direction changes, after a fixed number of trials, or when
    the step size approaches the limits of the floating point type.
    """

    dtype = jnp.result_type(position)
    limits = jnp.finfo(dtype)
    initial_step_size = jnp.asarray(initial_step_size, dtype=dtype)

    def direction_at(key, step_size):
        prob = single_step_acceptance(
            key, value_and_grad, position, log_prob, grad, step_size, inv_mm
        )
        return jnp.where(prob > target_accept, 1, -1).astype(jnp.int32)

    def cond_fun(carry):
        _, direction, previous, step_size, i = carry
        not_too_large = (step_size < limits.max / 2) | (direction < 0)
        not_too_small = (step_size > limits.tiny * 2) | (direction > 0)
        not_crossed = (previous == 0) | (direction == previous)
        within_budget = i < MAX_HALVINGS_OR_DOUBLINGS
        return not_too_large & not_too_small & not_crossed & within_budget

    def body_fun(carry):
        key, direction, _, step_size, i = carry
        key, subkey = jax.random.split(key)
        step_size = step_size * jnp.power(2.0, direction).astype(dtype)
        return key, direction_at(subkey, step_size), direction, step_size, i + 1

    key, subkey = jax.random.split(prng_key)
    direction = direction_at(subkey, initial_step_size)
    zero = jnp.zeros((), dtype=jnp.int32)
    carry = (key, direction, zero, initial_step_size, zero)
    _, _, _, step_size, _ = jax.lax.while_loop(cond_fun, body_fun, carry)
    return step_size
