import logging
from collections.abc import Generator
from contextlib import contextmanager

import jax
import jax.numpy as jnp
import pytest
from _pytest.logging import LogCaptureHandler

from dsem.goose.builder import EngineBuilder
from dsem.goose.engine import SamplingResults
from dsem.goose.nuts import NUTSKernel


def pytest_addoption(parser):
    parser.addoption(
        "--run-mcmc", action="store_true", default=False, help="run mcmc tests"
    )

    parser.addoption(
        "--mcmc-seed", action="store", default=42, help="set mcmc seed", type=int
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "mcmc: mark test as mcmc test")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-mcmc"):
        # --run-mcmc given in cli: do not skip mcmc tests
        return

    skip_mcmc = pytest.mark.skip(reason="need --run-mcmc option to run")

    for item in items:
        if "mcmc" in item.keywords:
            item.add_marker(skip_mcmc)


@pytest.fixture
def mcmc_seed(request):
    return request.config.getoption("--mcmc-seed")


@contextmanager
def local_caplog_fn(
    level: int = logging.INFO, name: str = "dsem"
) -> Generator[LogCaptureHandler]:
    """
    Context manager that captures records from non-propagating loggers.

    After the end of the ``with`` statement, the log level is restored to its original
    value. Code adapted from `this GitHub comment <GH_>`_.

    .. _GH: https://github.com/pytest-dev/pytest/issues/3697#issuecomment-790925527

    Parameters
    ----------
    level
        The log level.
    name
        The name of the logger to update.
    """

    logger = logging.getLogger(name)

    old_level = logger.level
    logger.setLevel(level)

    handler = LogCaptureHandler()
    logger.addHandler(handler)

    try:
        yield handler
    finally:
        logger.setLevel(old_level)
        logger.removeHandler(handler)


@pytest.fixture
def local_caplog():
    """
    Fixture that yields a context manager for capturing records from non-propagating
    loggers.

    Examples
    --------
    Usage example::

        from dsem.goose.warmup import stan_epochs


        def test_no_warmup(local_caplog):
            with local_caplog() as caplog:
                stan_epochs(warmup_duration=0)
                assert caplog.records[0].levelname == "WARNING"
    """

    yield local_caplog_fn


class Gaussian:
    """
    An independent normal log-density with the given scales, implementing the
    ``LogDensity`` protocol of the sampler.
    """

    def __init__(self, scale):
        self.scale = jnp.asarray(scale, dtype=jnp.float32)

    @property
    def size(self) -> int:
        return self.scale.size

    def log_prob(self, theta):
        return -0.5 * jnp.sum((theta / self.scale) ** 2)

    def value_and_grad(self, theta):
        return jax.value_and_grad(self.log_prob)(theta)


class Box:
    """A standard normal truncated to the unit box, minus infinity outside."""

    size = 1

    def log_prob(self, theta):
        inside = jnp.all(jnp.abs(theta) < 1.0)
        return jnp.where(inside, -0.5 * jnp.sum(theta**2), -jnp.inf)

    def value_and_grad(self, theta):
        return jax.value_and_grad(self.log_prob)(theta)


@pytest.fixture
def gaussian():
    """Factory for :class:`Gaussian` targets."""
    return Gaussian


@pytest.fixture
def box() -> Box:
    return Box()


@pytest.fixture(scope="session")
def result() -> SamplingResults:
    builder = EngineBuilder(0, 2)
    builder.set_duration(warmup_duration=100, posterior_duration=100)
    builder.set_log_density(Gaussian([1.0, 2.0]))
    builder.set_initial_values(jnp.array([0.5, -0.5]))
    builder.set_kernel(NUTSKernel())
    builder.show_progress = False

    engine = builder.build()
    engine.sample_all_epochs()
    return engine.get_results()
