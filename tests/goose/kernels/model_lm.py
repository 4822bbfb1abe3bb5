"""
# Simple linear regression test case
"""

import jax
import jax.numpy as jnp
import numpy as np
import scipy
from pytest import approx

import dsem.goose as gs
from dsem.goose.engine import SamplingResults
from dsem.goose.types import Kernel

rng = np.random.default_rng(1337)

n = 30
p = 2

beta = np.ones(p)
sigma = 0.1

X = np.column_stack([np.ones(n), rng.uniform(size=[n, p - 1])])
y = rng.normal(X @ beta, sigma, size=n)

beta_ols, rss_ols, _, _ = scipy.linalg.lstsq(X, y)
sigma_ols = np.sqrt(rss_ols / (n - p))


class LinearModel:
    """
    The log-likelihood of a linear model with a flat prior. The position is
    ``[beta_0, beta_1, log_sigma]``.
    """

    size = p + 1

    def __init__(self):
        self.X = jnp.asarray(X, dtype=jnp.float32)
        self.y = jnp.asarray(y, dtype=jnp.float32)

    def log_prob(self, theta):
        mu = self.X @ theta[:p]
        sigma = jnp.exp(theta[p])
        return jnp.sum(jax.scipy.stats.norm.logpdf(self.y, mu, sigma))

    def value_and_grad(self, theta):
        return jax.value_and_grad(self.log_prob)(theta)


initial_values = jnp.asarray(np.append(beta, np.log(sigma)), dtype=jnp.float32)


def run_kernel_test(
    mcmc_seed: int, kernel: Kernel, test_da_target_accept: bool = True
) -> SamplingResults:
    builder = gs.EngineBuilder(mcmc_seed, num_chains=2)

    builder.set_kernel(kernel)
    builder.set_log_density(LinearModel())
    builder.set_initial_values(initial_values)

    builder.set_duration(warmup_duration=1000, posterior_duration=2000)

    engine = builder.build()
    engine.sample_all_epochs()

    results = engine.get_results()
    infos = results.get_posterior_transition_infos()
    samples = np.asarray(results.get_posterior_samples())

    avg_beta = np.mean(samples[..., :p], axis=(0, 1))
    assert avg_beta == approx(beta_ols, rel=0.05)

    avg_log_sigma = np.mean(samples[..., p])
    assert avg_log_sigma == approx(np.log(sigma_ols), rel=0.05)

    if test_da_target_accept:
        avg_acceptance_prob = np.mean(infos.acceptance_prob)
        assert avg_acceptance_prob == approx(kernel.da_target_accept, abs=0.1)

    return results
