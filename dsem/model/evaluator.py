"""
Log-posterior evaluation on the flat unconstrained parameter vector.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Sequence
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from ..config import InitStrategy
from ..errors import NumericalError
from .graph import ModelGraph, Param, Position

logger = logging.getLogger(__name__)

Array = Any
KeyArray = Any

JITTER_RANGE = 2.0


def _element_names(name: str, shape: tuple[int, ...]) -> list[str]:
    if not shape:
        return [name]
    return [
        f"{name}[{','.join(map(str, idx))}]"
        for idx in itertools.product(*(range(n) for n in shape))
    ]


class LogPosterior:
    """
    Evaluates the unnormalized log-posterior of a :class:`.ModelGraph` and its
    gradient on a flat vector ``theta`` of all unconstrained parameters.

    The parameters are laid out in the topological order of the graph, each
    flattened in row-major order. Gradients are computed by reverse-mode automatic
    differentiation.

    All methods except :meth:`.evaluate` are pure and jittable, so the object can be
    shared by any number of chains.

    Parameters
    ----------
    graph
        The model graph.
    """

    def __init__(self, graph: ModelGraph):
        self._graph = graph
        self._params: list[Param] = graph.params

        self._slices: dict[str, slice] = {}
        offset = 0
        for param in self._params:
            self._slices[param.name] = slice(offset, offset + param.size)
            offset += param.size

        self._size = offset
        self._evaluate_jitted = jax.jit(self.value_and_grad)

    @property
    def graph(self) -> ModelGraph:
        return self._graph

    @property
    def size(self) -> int:
        """Number of unconstrained parameters."""
        return self._size

    @property
    def params(self) -> list[Param]:
        return list(self._params)

    def unflatten(self, theta: Array) -> Position:
        """Splits ``theta`` into a position dict of unconstrained parameters."""
        return {
            param.name: jnp.reshape(theta[self._slices[param.name]], param.shape)
            for param in self._params
        }

    def flatten(self, position: Position) -> Array:
        """Concatenates the unconstrained values of a position into ``theta``."""
        parts = [jnp.ravel(jnp.asarray(position[p.name])) for p in self._params]
        return jnp.concatenate(parts)

    def log_prob(self, theta: Array) -> Array:
        """The unnormalized log-posterior at ``theta``."""
        return self._graph.log_posterior(self.unflatten(theta))

    def value_and_grad(self, theta: Array) -> tuple[Array, Array]:
        """
        The log-posterior and its gradient at ``theta``.

        Non-finite results are returned as they are. Used by the sampler, which treats
        them as divergent transitions.
        """
        return jax.value_and_grad(self.log_prob)(theta)

    def evaluate(self, theta: Array) -> tuple[float, np.ndarray]:
        """
        The log-posterior and its gradient at ``theta`` as Python/NumPy values.

        Raises
        ------
        NumericalError
            If the log-posterior or any element of the gradient is not finite.
        """

        theta = jnp.asarray(theta, dtype=jnp.result_type(float))

        if theta.shape != (self._size,):
            raise ValueError(
                f"theta must have shape ({self._size},), got {theta.shape}"
            )

        value, grad = self._evaluate_jitted(theta)
        value = float(value)
        grad = np.asarray(grad)

        if not np.isfinite(value):
            raise NumericalError(f"Log-posterior is not finite ({value})")

        if not np.all(np.isfinite(grad)):
            bad = self.parameter_names(natural=False)[int(np.argmin(np.isfinite(grad)))]
            raise NumericalError(f"Gradient is not finite, first at {bad}")

        return value, grad

    def constrain(self, theta: Array) -> dict[str, Array]:
        """
        Returns the natural-scale values of all parameters and calculated quantities.
        Only works on a single ``theta``; use ``jax.vmap`` for batches.
        """
        return self._graph.values(self.unflatten(theta))

    def constrain_flat(self, theta: Array) -> Array:
        """
        Like ``theta``, but each parameter on its natural scale. Works on arrays with
        any number of leading batch dimensions.
        """
        parts = [
            param.constrain(theta[..., self._slices[param.name]])
            for param in self._params
        ]
        return jnp.concatenate(parts, axis=-1)

    def parameter_names(self, natural: bool = True) -> list[str]:
        """
        Names of the elements of ``theta``, e.g. ``"gamma[0]"`` or ``"u[3,1]"``.

        With ``natural=False``, transformed parameters are named by their
        unconstrained counterpart, e.g. ``"tau_transformed[0]"``.
        """
        names = []
        for param in self._params:
            name = param.name if natural else param.transformed_name
            names.extend(_element_names(name, param.shape))
        return names

    def slice_of(self, name: str) -> slice:
        """The slice of ``theta`` that belongs to the parameter ``name``."""
        return self._slices[name]

    def initial_positions(
        self,
        key: KeyArray,
        num_chains: int,
        strategy: InitStrategy | str = InitStrategy.RANDOM_JITTER,
    ) -> Array:
        """
        Initial values of ``theta`` for each chain, shape ``(num_chains, size)``.

        ``"zero"`` starts every chain at the origin of the unconstrained space.
        ``"random-jitter"`` draws each element uniformly from ``(-2, 2)``, using a
        separate part of ``key`` for each chain.
        """

        strategy = InitStrategy(strategy)

        if strategy == InitStrategy.ZERO:
            return jnp.zeros((num_chains, self._size))

        keys = jax.random.split(key, num_chains)
        return jax.vmap(
            lambda k: jax.random.uniform(
                k, (self._size,), minval=-JITTER_RANGE, maxval=JITTER_RANGE
            )
        )(keys)

    def subset_names(self, names: Sequence[str]) -> list[str]:
        """All element names of the given parameters."""
        return [
            element
            for param in self._params
            if param.name in names
            for element in _element_names(param.name, param.shape)
        ]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(size={self._size}, graph={self._graph!r})"
