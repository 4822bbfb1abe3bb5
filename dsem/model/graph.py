"""
Declarative model graphs.

A :class:`ModelGraph` is built from three kinds of nodes:

- :class:`Param` nodes are sampled. Each has a prior and, optionally, a bijector that
  maps the unconstrained sampling space to the natural scale of the parameter.
- :class:`Calc` nodes are deterministic functions of other nodes.
- :class:`Obs` nodes hold observed data and contribute the likelihood.

The graph evaluates all densities as pure functions of a *position*, that is, a dict
mapping parameter names to unconstrained values. All methods are jittable unless
``check=True`` is passed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import jax.numpy as jnp
import networkx as nx
import numpy as np
import pandas as pd
import tensorflow_probability.substrates.jax.bijectors as tfb
import tensorflow_probability.substrates.jax.distributions as tfd

from ..errors import DomainError

logger = logging.getLogger(__name__)

Array = Any
Position = dict[str, Array]
PriorFactory = Callable[..., tfd.Distribution]


@dataclass(frozen=True, eq=False)
class Param:
    """
    A sampled parameter.

    Parameters
    ----------
    name
        The name of the parameter on the natural scale.
    shape
        The shape of the parameter.
    prior
        Called with the natural-scale values of ``parents`` and returns the prior
        distribution. The prior is evaluated on the natural scale.
    parents
        Names of the nodes the prior depends on.
    bijector
        Maps the unconstrained value to the natural scale. The log-determinant of its
        Jacobian is added to the log-prior. ``None`` means identity.
    """

    name: str
    shape: tuple[int, ...]
    prior: PriorFactory
    parents: tuple[str, ...] = ()
    bijector: tfb.Bijector | None = None

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=int))

    @property
    def transformed_name(self) -> str:
        """The name of the parameter in the unconstrained space."""
        if self.bijector is None:
            return self.name
        return f"{self.name}_transformed"

    def constrain(self, value: Array) -> Array:
        if self.bijector is None:
            return value
        return self.bijector.forward(value)

    def unconstrain(self, value: Array) -> Array:
        if self.bijector is None:
            return value
        return self.bijector.inverse(value)

    def log_prob(self, value: Array, *parent_values: Array) -> Array:
        """
        Log-prior of the unconstrained ``value``, including the log-Jacobian of the
        bijector.
        """
        natural = self.constrain(value)
        lp = jnp.sum(self.prior(*parent_values).log_prob(natural))

        if self.bijector is not None:
            lp += jnp.sum(self.bijector.forward_log_det_jacobian(value, event_ndims=0))

        return lp

    def describe_prior(self) -> str:
        # unit placeholders for the parents, only the distribution class is read
        dist = self.prior(*(jnp.ones(()) for _ in self.parents))
        return type(dist).__name__


@dataclass(frozen=True, eq=False)
class Calc:
    """A deterministic node ``function(*inputs)``."""

    name: str
    function: Callable[..., Any]
    inputs: tuple[str, ...]


@dataclass(frozen=True, eq=False)
class Obs:
    """
    An observed node.

    ``log_prob(value, *inputs)`` returns the (elementwise or summed) log-likelihood
    of the observed ``value``.
    """

    name: str
    value: Array
    log_prob: Callable[..., Array]
    inputs: tuple[str, ...] = field(default=())


Node = Param | Calc | Obs


def _dependencies(node: Node) -> tuple[str, ...]:
    if isinstance(node, Param):
        return node.parents
    return node.inputs


class ModelGraph:
    """
    A static graph of parameter, calculation and observation nodes.

    Parameters
    ----------
    nodes
        The nodes. Names must be unique and every dependency must be part of the graph.

    Raises
    ------
    RuntimeError
        If names are duplicated, a dependency is missing or the graph has a cycle.

    Examples
    --------
    A normal model with unknown mean:

    >>> import tensorflow_probability.substrates.jax.distributions as tfd
    >>> mu = Param("mu", (), lambda: tfd.Normal(0.0, 10.0))
    >>> y = Obs(
    ...     "y",
    ...     jnp.array([1.0, 2.0]),
    ...     lambda y, mu: tfd.Normal(mu, 1.0).log_prob(y),
    ...     inputs=("mu",),
    ... )
    >>> graph = ModelGraph([mu, y])
    >>> graph
    ModelGraph(1 params, 0 calcs, 1 obs)
    """

    def __init__(self, nodes: Iterable[Node]):
        nodes = list(nodes)
        names = [node.name for node in nodes]
        dups = sorted({name for name in names if names.count(name) > 1})

        if dups:
            raise RuntimeError(f"Duplicate node names: {', '.join(dups)}")

        self._nodes: dict[str, Node] = {node.name: node for node in nodes}

        for node in nodes:
            missing = [dep for dep in _dependencies(node) if dep not in self._nodes]
            if missing:
                raise RuntimeError(
                    f"Node {node.name!r} depends on unknown node(s) "
                    f"{', '.join(missing)}"
                )

        self._graph = self._build_graph(nodes)

        if not nx.is_directed_acyclic_graph(self._graph):
            cycle = nx.find_cycle(self._graph)
            raise RuntimeError(f"Model graph has a cycle: {cycle}")

        self._sorted = [self._nodes[name] for name in nx.topological_sort(self._graph)]

    @staticmethod
    def _build_graph(nodes: Sequence[Node]) -> nx.DiGraph:
        graph = nx.DiGraph()
        graph.add_nodes_from(node.name for node in nodes)
        graph.add_edges_from(
            (dep, node.name) for node in nodes for dep in _dependencies(node)
        )
        return graph

    @property
    def graph(self) -> nx.DiGraph:
        """The dependency graph. Edges point from inputs to outputs."""
        return self._graph

    @property
    def nodes(self) -> dict[str, Node]:
        return dict(self._nodes)

    @property
    def params(self) -> list[Param]:
        """Parameter nodes in topological order."""
        return [node for node in self._sorted if isinstance(node, Param)]

    @property
    def calcs(self) -> list[Calc]:
        return [node for node in self._sorted if isinstance(node, Calc)]

    @property
    def observed(self) -> list[Obs]:
        return [node for node in self._sorted if isinstance(node, Obs)]

    def values(self, position: Position) -> dict[str, Array]:
        """
        Computes the natural-scale values of all parameter and calculation nodes.

        ``position`` maps the names of the parameters to unconstrained values.
        """

        values: dict[str, Array] = {}

        for node in self._sorted:
            if isinstance(node, Param):
                values[node.name] = node.constrain(position[node.name])
            elif isinstance(node, Calc):
                values[node.name] = node.function(*(values[i] for i in node.inputs))
            else:
                values[node.name] = node.value

        return values

    def log_prior(self, position: Position, check: bool = False) -> Array:
        """
        Sum of the log-priors of all parameters, evaluated on the natural scale, plus
        the log-Jacobians of their bijectors.
        """

        values = self.values(position)
        lp = 0.0

        for param in self.params:
            parents = (values[p] for p in param.parents)
            lp_param = param.log_prob(position[param.name], *parents)

            if check:
                _check_finite(lp_param, f"log-prior of {param.name!r}")

            lp += lp_param

        return lp

    def log_likelihood(self, position: Position, check: bool = False) -> Array:
        """Sum of the log-likelihoods of all observed nodes."""

        values = self.values(position)
        lp = 0.0

        for obs in self.observed:
            inputs = (values[i] for i in obs.inputs)
            lp_obs = jnp.sum(obs.log_prob(obs.value, *inputs))

            if check:
                _check_finite(lp_obs, f"log-likelihood of {obs.name!r}")

            lp += lp_obs

        return lp

    def log_posterior(self, position: Position, check: bool = False) -> Array:
        """
        The unnormalized log-posterior ``log_prior + log_likelihood``.

        Parameters
        ----------
        position
            Unconstrained parameter values.
        check
            If *True*, the function is evaluated eagerly and raises a
            :class:`.DomainError` if the position or any density contribution is not
            finite. Cannot be used under ``jax.jit``.
        """

        if check:
            for name, value in position.items():
                if not np.all(np.isfinite(np.asarray(value))):
                    raise DomainError(f"Parameter {name!r} has non-finite values")

        return self.log_prior(position, check) + self.log_likelihood(position, check)

    def describe(self) -> pd.DataFrame:
        """Returns one row per node with its kind, shape, prior and inputs."""

        rows = []
        for node in self._sorted:
            row: dict[str, Any] = {"node": node.name, "kind": type(node).__name__}

            if isinstance(node, Param):
                row["shape"] = node.shape
                row["prior"] = node.describe_prior()
                row["transform"] = (
                    "-" if node.bijector is None else type(node.bijector).__name__
                )
            elif isinstance(node, Obs):
                row["shape"] = tuple(np.shape(node.value))

            row["inputs"] = ", ".join(_dependencies(node)) or "-"
            rows.append(row)

        df = pd.DataFrame(rows).set_index("node")
        return df.fillna("-")

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({len(self.params)} params, "
            f"{len(self.calcs)} calcs, {len(self.observed)} obs)"
        )


def _check_finite(value: Array, what: str) -> None:
    if not np.all(np.isfinite(np.asarray(value))):
        raise DomainError(f"The {what} is not finite ({float(np.asarray(value))})")
