"""
Fitting the AR(1) DSEM to a panel dataset.
"""

from __future__ import annotations

import logging
import threading
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import jax
import numpy as np
import pandas as pd

from . import goose as gs
from .config import KernelType, SamplerConfig
from .data import Dataset
from .errors import ConvergenceWarning, NumericalError
from .model import LogPosterior, SubjectQuantities, dsem_graph, subject_quantities

logger = logging.getLogger(__name__)

SUMMARY_PARAMS = ("gamma", "tau")
SUMMARY_COLUMNS = [
    "mean",
    "sd",
    "q_0.05",
    "q_0.5",
    "q_0.95",
    "hdi_low",
    "hdi_high",
    "rhat",
    "ess_bulk",
    "ess_tail",
    "mcse_mean",
]


def _kernel(config: SamplerConfig) -> gs.Kernel:
    if config.kernel == KernelType.HMC:
        return gs.HMCKernel(
            num_integration_steps=config.num_integration_steps,
            da_target_accept=config.target_acceptance,
            mm_diag=not config.dense_mass_matrix,
        )

    return gs.NUTSKernel(
        max_treedepth=config.max_treedepth,
        da_target_accept=config.target_acceptance,
        mm_diag=not config.dense_mass_matrix,
    )


@dataclass
class FitResult:
    """
    The outcome of :func:`fit`.

    ``draws`` holds the retained posterior draws of all parameters on their natural
    scale with the dimensions ``(chains, draws, parameters)``. The columns are named
    by ``parameter_names``.
    """

    draws: np.ndarray
    parameter_names: list[str]
    summary: pd.DataFrame | None
    divergences: np.ndarray
    warmup_divergences: np.ndarray
    warnings: list[ConvergenceWarning]
    reliable: bool
    cancelled: bool
    config: SamplerConfig
    results: gs.SamplingResults = field(repr=False)
    diagnostics: gs.Summary | None = field(repr=False)
    log_posterior: LogPosterior = field(repr=False)

    @property
    def num_chains(self) -> int:
        return self.draws.shape[0]

    @property
    def num_draws(self) -> int:
        """Retained draws per chain."""
        return self.draws.shape[1]

    def posterior(self, name: str) -> np.ndarray:
        """
        The draws of the parameter ``name`` with the dimensions
        ``(chains, draws, *shape)``.
        """

        names = [p.name for p in self.log_posterior.params]
        if name not in names:
            raise KeyError(f"Unknown parameter {name!r}, choose from {names}")

        param = self.log_posterior.params[names.index(name)]
        values = self.draws[..., self.log_posterior.slice_of(name)]
        return values.reshape(values.shape[:2] + param.shape)

    def position(self) -> dict[str, np.ndarray]:
        return {p.name: self.posterior(p.name) for p in self.log_posterior.params}

    def subject_quantities(self) -> SubjectQuantities:
        """
        Posterior draws of ``mu``, ``psi`` and ``phi`` per subject, each with the
        dimensions ``(chains, draws, N_subj)``.
        """

        gamma = self.posterior("gamma")
        n_subj = self.log_posterior.graph.observed[0].value.shape[0]

        if "u" in self.parameter_groups:
            u = self.posterior("u")
        else:
            u = np.zeros(gamma.shape[:2] + (n_subj, 3), dtype=gamma.dtype)

        sq = subject_quantities(gamma[..., None, :], u)
        return SubjectQuantities(*(np.asarray(x) for x in sq))

    @property
    def parameter_groups(self) -> list[str]:
        return [p.name for p in self.log_posterior.params]

    def to_dataframe(self, include_subjects: bool = False) -> pd.DataFrame:
        """
        The summary table indexed by parameter name. With ``include_subjects=True``,
        the subject deviations ``u`` are summarized, too.
        """

        if self.diagnostics is None:
            raise RuntimeError("No posterior draws to summarize")

        if not include_subjects or "u" not in self.parameter_groups:
            return self.diagnostics.to_dataframe()

        diagnostics = gs.Summary(
            self.results,
            position=self.position(),
            rhat_threshold=self.config.rhat_threshold,
            min_ess_ratio=self.config.min_ess_ratio,
        )
        return diagnostics.to_dataframe()


def _summarize(
    results: gs.SamplingResults,
    log_posterior: LogPosterior,
    draws: np.ndarray,
    config: SamplerConfig,
) -> gs.Summary:
    position = {}
    for param in log_posterior.params:
        if param.name in SUMMARY_PARAMS:
            values = draws[..., log_posterior.slice_of(param.name)]
            position[param.name] = values.reshape(values.shape[:2] + param.shape)

    return gs.Summary(
        results,
        position=position,
        rhat_threshold=config.rhat_threshold,
        min_ess_ratio=config.min_ess_ratio,
    )


def fit(
    data: Dataset | Mapping[str, Any],
    config: SamplerConfig | Mapping[str, Any] | None = None,
    cancel: threading.Event | None = None,
) -> FitResult:
    """
    Draws from the posterior of the AR(1) DSEM for ``data``.

    Parameters
    ----------
    data
        A :class:`.Dataset` or a record with the keys ``"N_obs"``, ``"N_subj"`` and
        ``"Y"``.
    config
        A :class:`.SamplerConfig` or a dict of its options. The defaults are used if
        ``None``.
    cancel
        An event that stops the sampling at the next chunk boundary when it is set.
        The draws completed so far are returned with ``cancelled=True``.

    Raises
    ------
    ConfigurationError
        If the configuration is invalid. Checked before the data is looked at.
    DatasetError
        If the data is malformed.
    NumericalError
        If the log-posterior is not finite at the initial position of some chain.
    """

    if config is None:
        config = SamplerConfig()
    elif isinstance(config, Mapping):
        config = SamplerConfig.from_dict(dict(config))

    config = config.validate()

    dataset = data if isinstance(data, Dataset) else Dataset.from_record(data)
    graph = dsem_graph(dataset, config.random_effects)
    log_posterior = LogPosterior(graph)

    logger.info(f"Fitting {graph!r} to {dataset!r}")
    logger.info(
        f"Kernel {config.kernel.value}, {config.chains} chains, "
        f"{config.warmup_iterations} warmup and "
        f"{config.sampling_iterations} sampling iterations, seed {config.seed}"
    )

    init_key, engine_key = jax.random.split(jax.random.PRNGKey(config.seed))
    positions = log_posterior.initial_positions(
        init_key, config.chains, config.init_strategy
    )

    initial_log_prob = np.asarray(jax.vmap(log_posterior.log_prob)(positions))
    if not np.all(np.isfinite(initial_log_prob)):
        bad = np.flatnonzero(~np.isfinite(initial_log_prob)).tolist()
        raise NumericalError(f"Log-posterior not finite at the initial values of {bad}")

    builder = gs.EngineBuilder(seed=engine_key, num_chains=config.chains)
    builder.set_duration(
        warmup_duration=config.warmup_iterations,
        posterior_duration=config.sampling_iterations,
        thinning_posterior=config.thinning,
    )
    builder.set_log_density(log_posterior)
    builder.set_initial_values(positions, multiple_chains=True)
    builder.set_kernel(_kernel(config))
    builder.set_cancel_event(cancel)
    builder.show_progress = config.show_progress

    engine = builder.build()
    engine.sample_all_epochs()
    results = engine.get_results()

    posterior = results.get_posterior_samples()
    if posterior is None:
        draws = np.zeros((config.chains, 0, log_posterior.size), dtype=np.float32)
    else:
        draws = np.asarray(log_posterior.constrain_flat(posterior))

    no_divergences = np.zeros(config.chains, dtype=int)
    divergences = results.divergences(posterior_only=True)
    all_divergences = results.divergences(posterior_only=False)
    divergences = divergences if divergences.size else no_divergences
    all_divergences = all_divergences if all_divergences.size else no_divergences
    warmup_divergences = all_divergences - divergences

    diagnostics = None
    summary = None
    convergence_warnings: list[ConvergenceWarning] = []

    if draws.shape[1] > 0:
        diagnostics = _summarize(results, log_posterior, draws, config)
        df = diagnostics.to_dataframe()
        summary = df[[c for c in SUMMARY_COLUMNS if c in df.columns]]
        convergence_warnings = diagnostics.convergence_warnings()

    for warning in convergence_warnings:
        logger.warning(str(warning))
        warnings.warn(warning, stacklevel=2)

    if results.cancelled:
        logger.warning(
            f"Sampling was cancelled after {draws.shape[1]} posterior draws per chain"
        )

    reliable = (
        not results.cancelled and draws.shape[1] > 0 and not convergence_warnings
    )

    return FitResult(
        draws=draws,
        parameter_names=log_posterior.parameter_names(),
        summary=summary,
        divergences=divergences,
        warmup_divergences=warmup_divergences,
        warnings=convergence_warnings,
        reliable=reliable,
        cancelled=results.cancelled,
        config=config,
        results=results,
        diagnostics=diagnostics,
        log_posterior=log_posterior,
    )
