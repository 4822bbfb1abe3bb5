"""
# Inverse mass matrix estimation

The inverse mass matrix is estimated from the positions of a slow adaptation epoch.
Like Stan, the estimate is shrunk towards a small multiple of the identity:

    (n / (n + 5)) * S + 1e-3 * (5 / (n + 5)) * I

where ``S`` is the sample (co)variance of the ``n`` positions.
"""

import jax.numpy as jnp

from .types import Array

SHRINKAGE = 5.0
REGULARIZATION = 1e-3


def _weights(n: int) -> tuple[float, float]:
    return n / (n + SHRINKAGE), REGULARIZATION * SHRINKAGE / (n + SHRINKAGE)


def _as_matrix(history: Array) -> Array:
    history = jnp.asarray(history)
    return jnp.reshape(history, (history.shape[0], -1))


def tune_inv_mm_diag(history: Array) -> Array:
    """
    Estimates a diagonal inverse mass matrix from a history of shape
    ``(time, size)``. Returns a vector of length ``size``.
    """

    matrix = _as_matrix(history)
    scale, reg = _weights(matrix.shape[0])

    var = jnp.var(matrix, axis=0, ddof=1)
    return scale * var + reg


def tune_inv_mm_full(history: Array) -> Array:
    """
    Estimates a dense inverse mass matrix from a history of shape
    ``(time, size)``. Returns a matrix of shape ``(size, size)``.
    """

    matrix = _as_matrix(history)
    scale, reg = _weights(matrix.shape[0])

    cov = jnp.atleast_2d(jnp.cov(matrix, rowvar=False))
    cov = scale * cov
    return cov.at[jnp.diag_indices_from(cov)].add(reg)
