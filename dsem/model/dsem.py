"""
The hierarchical AR(1) dynamic structural equation model.

For subject ``i`` and timepoint ``t = 2, ..., N_obs``::

    Y[i, t] ~ Normal(mu[i] + phi[i] * (Y[i, t - 1] - mu[i]), psi[i])

    mu[i]  = gamma[0] + u[i, 0]
    psi[i] = exp(gamma[1] + u[i, 1])
    phi[i] = gamma[2] + u[i, 2]

with the priors::

    gamma[k] ~ Normal(0, 1e6)
    tau[k]   ~ HalfCauchy(0, 2.5)
    u[i, k]  ~ Normal(0, tau[k])

The first timepoint of each subject has no predecessor; it is conditioned on and does
not enter the likelihood. ``tau`` is sampled on the log scale.
"""

from __future__ import annotations

from typing import Any, NamedTuple

import jax.numpy as jnp
import tensorflow_probability.substrates.jax.bijectors as tfb
import tensorflow_probability.substrates.jax.distributions as tfd

from ..data import Dataset
from .graph import Calc, ModelGraph, Obs, Param

Array = Any

GAMMA_PRIOR_SCALE = 1e6
TAU_PRIOR_SCALE = 2.5

COMPONENTS = ("mean", "dispersion", "autoregression")


class SubjectQuantities(NamedTuple):
    """Per-subject quantities, each of shape ``(N_subj,)``."""

    mu: Array
    """Subject means."""

    psi: Array
    """Subject residual standard deviations, strictly positive."""

    phi: Array
    """Subject autoregression coefficients."""


def subject_quantities(gamma: Array, u: Array) -> SubjectQuantities:
    """
    Combines the fixed effects ``gamma`` (shape ``(3,)``) with the subject deviations
    ``u`` (shape ``(N_subj, 3)``).

    The dispersion goes through the exponential link, so ``psi`` is positive for any
    real ``gamma`` and ``u``.
    """

    eta = gamma + u
    return SubjectQuantities(mu=eta[..., 0], psi=jnp.exp(eta[..., 1]), phi=eta[..., 2])


def ar1_log_likelihood(y: Array, mu: Array, psi: Array, phi: Array) -> Array:
    """
    Elementwise log-likelihood of the lag-1 transitions, shape ``(N_subj, N_obs - 1)``.
    """

    mu = mu[..., None]
    loc = mu + phi[..., None] * (y[..., :-1] - mu)
    return tfd.Normal(loc, psi[..., None]).log_prob(y[..., 1:])


def _subjects_log_likelihood(y: Array, subjects: SubjectQuantities) -> Array:
    return ar1_log_likelihood(y, subjects.mu, subjects.psi, subjects.phi)


def dsem_graph(dataset: Dataset, random_effects: bool | None = None) -> ModelGraph:
    """
    Builds the model graph for a dataset.

    Parameters
    ----------
    dataset
        The observations.
    random_effects
        Whether subject-level deviations ``u`` and their SDs ``tau`` are modeled.
        ``None`` enables them if the dataset has more than one subject. Without
        random effects, all subjects share ``gamma`` and the graph has three
        parameters.
    """

    if random_effects is None:
        random_effects = dataset.n_subj > 1

    n_subj = dataset.n_subj
    y = jnp.asarray(dataset.y, dtype=jnp.float32)

    gamma = Param(
        "gamma",
        shape=(3,),
        prior=lambda: tfd.Normal(0.0, GAMMA_PRIOR_SCALE),
    )

    nodes: list[Param | Calc | Obs] = [gamma]

    if random_effects:
        tau = Param(
            "tau",
            shape=(3,),
            prior=lambda: tfd.HalfCauchy(0.0, TAU_PRIOR_SCALE),
            bijector=tfb.Exp(),
        )
        u = Param(
            "u",
            shape=(n_subj, 3),
            prior=lambda tau: tfd.Normal(0.0, tau),
            parents=("tau",),
        )
        subjects = Calc("subjects", subject_quantities, inputs=("gamma", "u"))
        nodes.extend([tau, u, subjects])
    else:
        subjects = Calc(
            "subjects",
            lambda gamma: subject_quantities(gamma, jnp.zeros((n_subj, 3))),
            inputs=("gamma",),
        )
        nodes.append(subjects)

    nodes.append(Obs("y", y, _subjects_log_likelihood, inputs=("subjects",)))

    return ModelGraph(nodes)
