"""
# Hamiltonian dynamics

Leapfrog integration with a Euclidean metric. The inverse mass matrix is either a
vector (diagonal metric) or a square matrix (dense metric). The choice is static,
so jitted functions specialize on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import jax
import jax.numpy as jnp
import jax.scipy.linalg

from .pytree import register_dataclass_as_pytree
from .types import Array, KeyArray

ValueAndGrad = Callable[[Array], tuple[Array, Array]]


@register_dataclass_as_pytree
@dataclass
class IntegratorState:
    """A point in phase space together with the log-density and its gradient."""

    position: Array
    momentum: Array
    log_prob: Array
    grad: Array


def velocity(momentum: Array, inv_mm: Array) -> Array:
    """The time derivative of the position, ``M^{-1} p``."""
    if jnp.ndim(inv_mm) == 1:
        return inv_mm * momentum
    return inv_mm @ momentum


def kinetic_energy(momentum: Array, inv_mm: Array) -> Array:
    return 0.5 * jnp.dot(momentum, velocity(momentum, inv_mm))


def hamiltonian(state: IntegratorState, inv_mm: Array) -> Array:
    """The energy of a phase-space point, i.e. the negative log joint density."""
    return kinetic_energy(state.momentum, inv_mm) - state.log_prob


def sample_momentum(prng_key: KeyArray, position: Array, inv_mm: Array) -> Array:
    """
    Draws a momentum from ``N(0, M)``. For a dense metric, ``M^{-1} = L L^T`` is
    factorized and ``L^{-T} z`` has the required covariance.
    """

    z = jax.random.normal(prng_key, jnp.shape(position), dtype=position.dtype)

    if jnp.ndim(inv_mm) == 1:
        return z / jnp.sqrt(inv_mm)

    chol = jnp.linalg.cholesky(inv_mm)
    return jax.scipy.linalg.solve_triangular(chol, z, trans="T", lower=True)


def leapfrog(
    value_and_grad: ValueAndGrad,
    state: IntegratorState,
    step_size: Array,
    inv_mm: Array,
) -> IntegratorState:
    """
    One leapfrog step. A negative ``step_size`` integrates backwards in time.
    """

    momentum = state.momentum + 0.5 * step_size * state.grad
    position = state.position + step_size * velocity(momentum, inv_mm)
    log_prob, grad = value_and_grad(position)
    momentum = momentum + 0.5 * step_size * grad

    return IntegratorState(position, momentum, log_prob, grad)


def integrate(
    value_and_grad: ValueAndGrad,
    state: IntegratorState,
    step_size: Array,
    inv_mm: Array,
    num_steps: int,
) -> IntegratorState:
    """Runs ``num_steps`` leapfrog steps with ``jax.lax.fori_loop``."""

    def body(_, s):
        return leapfrog(value_and_grad, s, step_size, inv_mm)

    return jax.lax.fori_loop(0, num_steps, body, state)
