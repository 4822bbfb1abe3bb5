"""
# Dual averaging step size adaptation

The step size is tuned towards a target acceptance probability with the primal-dual
averaging scheme of Nesterov (2009), as adapted by Hoffman and Gelman (2014) for the
No-U-Turn Sampler. The functions below update the kernel state in place and are
called from within jitted code.
"""

from typing import Protocol

import jax.numpy as jnp

DA_GAMMA = 0.05
DA_KAPPA = 0.75
DA_T0 = 10


class DAKernelState(Protocol):
    """
    A kernel state with dual averaging support. See Stan Development Team,
    `Stan Reference Manual, HMC algorithm parameters
    <https://mc-stan.org/docs/reference-manual/mcmc.html>`_.
    """

    step_size: float
    """The current step size of the kernel."""

    error_sum: float
    """Running sum of ``target - acceptance_prob`` in the current epoch."""

    log_avg_step_size: float
    """Log of the weighted average step size, used when the epoch ends."""

    mu: float
    """Shrinkage target of the log step size, ``log(10 * step_size)``."""


def da_init(kernel_state: DAKernelState) -> None:
    """
    Restarts the averaging from the current step size. Call at the start of each
    adaptation epoch.
    """

    kernel_state.error_sum = jnp.zeros_like(kernel_state.step_size)
    kernel_state.log_avg_step_size = jnp.log(kernel_state.step_size)
    kernel_state.mu = jnp.log(10.0 * kernel_state.step_size)


def da_step(
    kernel_state: DAKernelState,
    acceptance_prob: float,
    time_in_epoch: int,
    target_accept: float = 0.8,
    gamma: float = DA_GAMMA,
    kappa: float = DA_KAPPA,
    t0: int = DA_T0,
) -> None:
    """
    Updates the step size after one transition.

    Parameters
    ----------
    kernel_state
        A kernel state implementing :class:`.DAKernelState`.
    acceptance_prob
        The acceptance statistic of the transition. Non-finite values count as 0.
    time_in_epoch
        The number of completed transitions in this epoch.
    target_accept
        The target acceptance probability.
    gamma
        Regularization scale.
    kappa
        Relaxation exponent of the averaging weights.
    t0
        Iteration offset that stabilizes the first updates.
    """

    ks = kernel_state
    t = time_in_epoch + 1
    eta = t ** (-kappa)

    acceptance_prob = jnp.where(jnp.isfinite(acceptance_prob), acceptance_prob, 0.0)

    ks.error_sum = ks.error_sum + target_accept - acceptance_prob
    log_step_size = ks.mu - (ks.error_sum * jnp.sqrt(t)) / (gamma * (t0 + t))
    ks.step_size = jnp.exp(log_step_size)
    ks.log_avg_step_size = (1 - eta) * ks.log_avg_step_size + eta * log_step_size


def da_finalize(kernel_state: DAKernelState) -> None:
    """Sets the step size to the average of the finished epoch."""

    kernel_state.step_size = jnp.exp(kernel_state.log_avg_step_size)
