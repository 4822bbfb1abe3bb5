import jax
import jax.numpy as jnp
import numpy as np
import pytest
from model_lm import run_kernel_test

import dsem.goose as gs
from dsem.goose.epoch import EpochConfig, EpochType
from dsem.goose.kernel import ChainState
from dsem.goose.nuts import (
    NUTSKernelState,
    NUTSTransitionInfo,
    NUTSTuningInfo,
    _checkpoint_range,
    _is_turning,
)
from dsem.goose.types import Kernel


def type_check() -> None:
    kernel = gs.NUTSKernel()
    _: Kernel[NUTSKernelState, NUTSTransitionInfo, NUTSTuningInfo] = kernel


def posterior_epoch():
    config = EpochConfig(EpochType.POSTERIOR, 10)
    return config.to_state(nth_epoch=1, time_before_epoch=1)


def one_transition(kernel, target, position, seed=0):
    kernel.set_log_density(target)
    chain_state = ChainState.from_position(target, jnp.asarray(position))
    key = jax.random.PRNGKey(seed)
    kernel_state = kernel.init_state(key, chain_state)
    return kernel.transition(key, kernel_state, chain_state, posterior_epoch())


@pytest.mark.parametrize(
    "leaf_idx, expected",
    [(1, (0, 0)), (5, (1, 1)), (6, (3, 2)), (7, (0, 2)), (15, (0, 3))],
)
def test_checkpoint_range(leaf_idx, expected):
    idx_min, idx_max = _checkpoint_range(jnp.asarray(leaf_idx))
    assert (int(idx_min), int(idx_max)) == expected


def test_is_turning():
    inv_mm = jnp.ones(2)
    p = jnp.array([1.0, 0.0])

    # both ends keep moving in the direction of the sum
    assert not _is_turning(inv_mm, p, p, 3 * p)

    # the right end points back
    assert _is_turning(inv_mm, p, -p, p)


def test_max_treedepth(gaussian):
    kernel = gs.NUTSKernel(initial_step_size=1e-3, max_treedepth=1)
    outcome = one_transition(kernel, gaussian([1.0, 1.0]), [0.3, -0.2])
    info = outcome.info

    assert int(info.error_code) == 2
    assert kernel.error_book[int(info.error_code)] == "maximum tree depth"
    assert int(info.treedepth) == 1
    assert int(info.leapfrog) == 1
    assert not info.divergent
    assert float(info.acceptance_prob) == pytest.approx(1.0, abs=1e-3)


def test_turning_trajectory(gaussian):
    kernel = gs.NUTSKernel(initial_step_size=0.5)
    outcome = one_transition(kernel, gaussian([1.0]), [0.5])
    info = outcome.info

    assert int(info.error_code) == 0
    assert info.turning
    assert 1 <= int(info.treedepth) < 10
    assert int(info.leapfrog) <= 2 ** int(info.treedepth)
    assert np.isfinite(outcome.chain_state.log_prob)


def test_divergence_is_rejected(gaussian):
    kernel = gs.NUTSKernel(initial_step_size=1.0)
    target = gaussian([1e-4])
    outcome = one_transition(kernel, target, [1e-2])
    info = outcome.info

    assert info.divergent
    assert int(info.error_code) % 2 == 1
    assert int(info.position_moved) == 0
    assert np.array_equal(outcome.chain_state.position, jnp.array([1e-2]))


def test_kernel_state_is_unchanged_in_posterior(gaussian):
    kernel = gs.NUTSKernel(initial_step_size=0.25)
    kernel.set_log_density(gaussian([1.0]))
    chain_state = ChainState.from_position(gaussian([1.0]), jnp.zeros(1))
    key = jax.random.PRNGKey(1)
    kernel_state = kernel.init_state(key, chain_state)

    outcome = kernel.transition(key, kernel_state, chain_state, posterior_epoch())

    assert float(outcome.kernel_state.step_size) == pytest.approx(0.25)


@pytest.mark.mcmc
def test_nuts(mcmc_seed):
    kernel = gs.NUTSKernel()
    run_kernel_test(mcmc_seed, kernel)
