import jax.numpy as jnp
import numpy as np
import pytest
import scipy.stats

from dsem.data import Dataset
from dsem.model.dsem import (
    ar1_log_likelihood,
    dsem_graph,
    subject_quantities,
)

Y = np.array(
    [
        [0.5, 1.0, -0.3, 0.2, 0.8, 1.1],
        [2.0, 1.5, 1.7, 2.2, 1.9, 2.4],
        [-1.0, -0.4, -0.9, -1.3, -0.2, -0.6],
    ]
)


def ar1_reference(y, mu, psi, phi):
    y = np.atleast_2d(y)
    mu = np.asarray(mu)[:, None]
    loc = mu + np.asarray(phi)[:, None] * (y[:, :-1] - mu)
    return scipy.stats.norm.logpdf(y[:, 1:], loc, np.asarray(psi)[:, None])


def test_subject_quantities() -> None:
    gamma = jnp.array([1.0, -0.5, 0.3])
    u = jnp.array([[0.0, 0.0, 0.0], [0.5, 1.0, -0.1]])

    sq = subject_quantities(gamma, u)

    assert np.allclose(sq.mu, [1.0, 1.5])
    assert np.allclose(sq.psi, np.exp([-0.5, 0.5]))
    assert np.allclose(sq.phi, [0.3, 0.2])


def test_psi_is_positive() -> None:
    gamma = jnp.array([0.0, -40.0, 0.0])
    u = jnp.array([[0.0, -30.0, 0.0], [0.0, 30.0, 0.0]])

    sq = subject_quantities(gamma, u)

    assert np.all(np.asarray(sq.psi) > 0.0)


def test_subject_quantities_batched() -> None:
    gamma = jnp.zeros((4, 10, 1, 3))
    u = jnp.ones((4, 10, 5, 3))

    sq = subject_quantities(gamma, u)

    assert sq.mu.shape == (4, 10, 5)
    assert sq.psi.shape == (4, 10, 5)


def test_ar1_log_likelihood() -> None:
    mu = np.array([0.2, 2.0, -0.5])
    psi = np.array([0.7, 0.3, 1.2])
    phi = np.array([0.4, -0.2, 0.9])

    ll = ar1_log_likelihood(jnp.asarray(Y), jnp.asarray(mu), jnp.asarray(psi), phi)

    assert ll.shape == (3, 5)
    assert np.allclose(ll, ar1_reference(Y, mu, psi, phi), rtol=1e-4)


def test_first_timepoint_is_conditioned_on() -> None:
    mu = jnp.zeros(1)
    psi = jnp.ones(1)

    # phi = 0: the first timepoint is irrelevant
    y = jnp.array([[10.0, 0.0, 0.0]])
    ll = ar1_log_likelihood(y, mu, psi, jnp.zeros(1))

    assert np.allclose(ll, scipy.stats.norm.logpdf(0.0))


def test_random_effects_default() -> None:
    single = dsem_graph(Dataset(Y[:1]))
    panel = dsem_graph(Dataset(Y))

    assert [p.name for p in single.params] == ["gamma"]
    assert [p.name for p in panel.params] == ["gamma", "tau", "u"]


def test_random_effects_override() -> None:
    pooled = dsem_graph(Dataset(Y), random_effects=False)
    single = dsem_graph(Dataset(Y[:1]), random_effects=True)

    assert [p.name for p in pooled.params] == ["gamma"]
    assert [p.name for p in single.params] == ["gamma", "tau", "u"]


def test_param_shapes() -> None:
    graph = dsem_graph(Dataset(Y))
    params = {p.name: p for p in graph.params}

    assert params["gamma"].shape == (3,)
    assert params["tau"].shape == (3,)
    assert params["u"].shape == (3, 3)
    assert params["tau"].bijector is not None
    assert params["u"].parents == ("tau",)


def test_pooled_log_likelihood() -> None:
    graph = dsem_graph(Dataset(Y), random_effects=False)
    gamma = np.array([0.4, -0.3, 0.5])

    expected = ar1_reference(
        Y, np.full(3, gamma[0]), np.full(3, np.exp(gamma[1])), np.full(3, gamma[2])
    ).sum()

    ll = graph.log_likelihood({"gamma": jnp.asarray(gamma)})
    assert float(ll) == pytest.approx(expected, rel=1e-4)


def test_hierarchical_log_posterior() -> None:
    graph = dsem_graph(Dataset(Y))

    gamma = np.array([0.4, -0.3, 0.5])
    log_tau = np.array([-0.5, 0.1, -1.0])
    u = np.array([[0.1, -0.2, 0.05], [1.2, 0.3, -0.1], [-0.8, 0.0, 0.2]])
    tau = np.exp(log_tau)

    eta = gamma + u
    expected = (
        scipy.stats.norm.logpdf(gamma, 0.0, 1e6).sum()
        + scipy.stats.halfcauchy.logpdf(tau, 0.0, 2.5).sum()
        + log_tau.sum()
        + scipy.stats.norm.logpdf(u, 0.0, tau).sum()
        + ar1_reference(Y, eta[:, 0], np.exp(eta[:, 1]), eta[:, 2]).sum()
    )

    position = {
        "gamma": jnp.asarray(gamma),
        "tau": jnp.asarray(log_tau),
        "u": jnp.asarray(u),
    }

    assert float(graph.log_posterior(position)) == pytest.approx(expected, rel=1e-4)
