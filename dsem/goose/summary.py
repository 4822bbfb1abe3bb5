"""
Posterior statistics and convergence diagnostics.
"""

from __future__ import annotations

import itertools
from collections.abc import Sequence
from typing import Any, NamedTuple

import arviz as az
import numpy as np
import pandas as pd

from ..errors import ConvergenceWarning
from .engine import KernelErrorLog, SamplingResults
from .epoch import EpochType

Position = dict[str, Any]


class ErrorSummaryForOneCode(NamedTuple):
    error_code: int
    error_msg: str
    count_per_chain: np.ndarray
    count_per_chain_posterior: np.ndarray


def _make_error_summary(
    error_log: KernelErrorLog | None,
    posterior_error_log: KernelErrorLog | None,
) -> dict[int, ErrorSummaryForOneCode]:
    """
    Counts the transitions with each non-zero error code per chain, over all epochs
    and in the posterior epochs.
    """

    if error_log is None:
        return {}

    error_book = getattr(error_log.kernel_cls, "error_book", {})
    summary = {}

    for code in np.unique(error_log.error_codes):
        if code == 0:
            continue

        total = np.sum(error_log.error_codes == code, axis=1)

        if posterior_error_log is None:
            posterior = np.zeros_like(total)
        else:
            posterior = np.sum(posterior_error_log.error_codes == code, axis=1)

        summary[int(code)] = ErrorSummaryForOneCode(
            int(code), error_book.get(int(code), ""), total, posterior
        )

    return summary


def _element_name(var: str, idx: tuple[int, ...]) -> str:
    return var if not idx else f"{var}[{','.join(map(str, idx))}]"


def _split_single_chain(chain: Position) -> Position:
    """
    Splits the draws of a single chain into two chains of equal length, dropping the
    last draw if the number of draws is odd.
    """

    halves = {}
    for name, values in chain.items():
        values = np.asarray(values)
        half = values.shape[1] // 2
        halves[name] = values[0, : 2 * half].reshape((2, half) + values.shape[2:])
    return halves


def _create_quantity_dict(
    chain: Position, quantiles: Sequence[float], hdi_prob: float
) -> dict[str, dict[str, np.ndarray]]:
    azchain = az.convert_to_inference_data(chain).posterior

    quantities = {
        "mean": azchain.mean(dim=["chain", "draw"]),
        "sd": azchain.std(dim=["chain", "draw"]),
        "quantile": azchain.quantile(q=quantiles, dim=["chain", "draw"]),
        "hdi": az.hdi(azchain, hdi_prob=hdi_prob),
        "ess_bulk": az.ess(azchain, method="bulk"),
        "ess_tail": az.ess(azchain, method="tail"),
        "mcse_mean": az.mcse(azchain, method="mean"),
        "mcse_sd": az.mcse(azchain, method="sd"),
    }

    if azchain.chain.size > 1:
        quantities["rhat"] = az.rhat(azchain)
    else:
        halves = az.convert_to_inference_data(_split_single_chain(chain)).posterior
        quantities["rhat"] = az.rhat(halves)

    result = {
        key: {k: v.values for k, v in val.data_vars.items()}
        for key, val in quantities.items()
    }

    # arviz puts the interval bounds on the last axis
    for k, v in result["hdi"].items():
        result["hdi"][k] = np.moveaxis(v, -1, 0)

    return result


class Summary:
    """
    Posterior summary and convergence diagnostics of a sampling run.

    Summary statistics can be accessed via ``quantities[quantity_name][var_name]``.
    The arrays for ``"quantile"`` and ``"hdi"`` have the quantile or interval bound
    on the first axis, followed by the dimensions of the parameter.

    R-hat of a single chain compares its first and second half.

    The run is considered unreliable if

    - the rank-normalized split R-hat of any element exceeds ``rhat_threshold``,
    - the bulk ESS of any element is below ``min_ess_ratio`` times the total
      number of draws, or
    - any posterior transition diverged.

    Parameters
    ----------
    results
        The sampling results to summarize.
    position
        The posterior draws to summarize as a dict of arrays with the dimensions
        ``[chain, draw, ...]``, e.g. on the natural scale of the parameters. If
        ``None``, the flat unconstrained positions of ``results`` are summarized as
        ``"theta"``.
    quantiles
        The quantiles to compute.
    hdi_prob
        Level of the highest density intervals.
    selected
        Summarize only these variables of ``position``.
    rhat_threshold
        Largest acceptable R-hat.
    min_ess_ratio
        Smallest acceptable ratio of bulk ESS to the total number of draws.
    """

    quantities: dict[str, dict[str, np.ndarray]]
    config: dict
    sample_info: dict
    error_summary: dict[int, ErrorSummaryForOneCode]

    def __init__(
        self,
        results: SamplingResults,
        position: Position | None = None,
        quantiles: Sequence[float] = (0.05, 0.5, 0.95),
        hdi_prob: float = 0.9,
        selected: Sequence[str] | None = None,
        rhat_threshold: float = 1.01,
        min_ess_ratio: float = 0.1,
    ):
        if position is None:
            posterior = results.get_posterior_samples()
            if posterior is None:
                raise RuntimeError(f"No posterior samples in {results!r}")
            position = {"theta": posterior}

        if selected is not None:
            position = {k: v for k, v in position.items() if k in selected}

        if not position:
            raise ValueError("Nothing to summarize")

        position = {k: np.asarray(v) for k, v in position.items()}
        first = next(iter(position.values()))

        warmup_size = sum(
            epoch.duration
            for epoch in results.positions.get_epochs()
            if EpochType.is_adaptation(epoch.type)
        )

        self.sample_info = {
            "num_chains": first.shape[0],
            "sample_size_per_chain": first.shape[1],
            "warmup_size_per_chain": warmup_size,
        }

        self.config = {
            "quantiles": tuple(quantiles),
            "hdi_prob": hdi_prob,
            "rhat_threshold": rhat_threshold,
            "min_ess_ratio": min_ess_ratio,
        }

        self.quantities = _create_quantity_dict(position, quantiles, hdi_prob)
        self.divergences = results.divergences(posterior_only=True)
        self.warmup_divergences = results.divergences(posterior_only=False) - (
            self.divergences if self.divergences.size else 0
        )
        self.error_summary = _make_error_summary(
            results.get_error_log(posterior_only=False),
            results.get_error_log(posterior_only=True),
        )
        self.cancelled = results.cancelled

    @property
    def num_draws(self) -> int:
        """The total number of posterior draws across chains."""
        info = self.sample_info
        return info["num_chains"] * info["sample_size_per_chain"]

    def _elements_where(self, quantity: str, predicate) -> list[str]:
        names = []
        for var, values in self.quantities.get(quantity, {}).items():
            values = np.asarray(values)
            for idx in itertools.product(*(range(n) for n in values.shape)):
                if predicate(values[idx]):
                    names.append(_element_name(var, idx))
        return names

    def convergence_warnings(self) -> list[ConvergenceWarning]:
        """
        The reasons why the run is not reliable, as :class:`.ConvergenceWarning`
        objects. An empty list means all checks passed.
        """

        threshold = self.config["rhat_threshold"]
        min_ess = self.config["min_ess_ratio"] * self.num_draws
        warnings_ = []

        high_rhat = self._elements_where(
            "rhat", lambda x: not np.isfinite(x) or x > threshold
        )
        if high_rhat:
            warnings_.append(
                ConvergenceWarning(
                    f"R-hat above {threshold} for {', '.join(high_rhat)}"
                )
            )

        low_ess = self._elements_where(
            "ess_bulk", lambda x: not np.isfinite(x) or x < min_ess
        )
        if low_ess:
            warnings_.append(
                ConvergenceWarning(
                    f"Bulk ESS below {min_ess:g} for {', '.join(low_ess)}"
                )
            )

        num_divergent = int(np.sum(self.divergences))
        if num_divergent:
            warnings_.append(
                ConvergenceWarning(
                    f"{num_divergent} divergent transitions after warmup "
                    f"(per chain: {', '.join(map(str, self.divergences))})"
                )
            )

        return warnings_

    @property
    def reliable(self) -> bool:
        return not self.convergence_warnings()

    def to_dataframe(self) -> pd.DataFrame:
        """
        One row per parameter element, indexed by names like ``"gamma[0]"``.
        """

        quants = dict(self.quantities)

        for i, q in enumerate(self.config["quantiles"]):
            quants[f"q_{q}"] = {k: v[i, ...] for k, v in quants["quantile"].items()}

        quants["hdi_low"] = {k: v[0, ...] for k, v in quants["hdi"].items()}
        quants["hdi_high"] = {k: v[1, ...] for k, v in quants["hdi"].items()}

        del quants["quantile"]
        del quants["hdi"]

        rows = {}
        for var, mean in quants["mean"].items():
            for idx in itertools.product(*(range(n) for n in np.shape(mean))):
                row: dict[str, Any] = {"variable": var, "var_index": idx}
                for name, values in quants.items():
                    row[name] = float(np.asarray(values[var])[idx])
                row["sample_size"] = self.num_draws
                rows[_element_name(var, idx)] = row

        df = pd.DataFrame.from_dict(rows, orient="index")
        df.index.name = "parameter"

        first = ["variable", "var_index", "mean", "sd"]
        qtls = [f"q_{q}" for q in self.config["quantiles"]]
        cols = first + qtls + ["hdi_low", "hdi_high", "sample_size"]
        cols += [c for c in df.columns if c not in cols]
        return df[cols]

    def error_df(self) -> pd.DataFrame:
        """
        The number of transitions with each error code per chain, split into
        warmup and posterior.
        """

        records = []
        for code, entry in self.error_summary.items():
            for chain, (total, posterior) in enumerate(
                zip(entry.count_per_chain, entry.count_per_chain_posterior)
            ):
                for phase, count in (
                    ("warmup", total - posterior),
                    ("posterior", posterior),
                ):
                    records.append(
                        {
                            "error_code": code,
                            "error_msg": entry.error_msg,
                            "phase": phase,
                            "chain": chain,
                            "count": int(count),
                        }
                    )

        if not records:
            return pd.DataFrame(
                columns=["error_code", "error_msg", "phase", "chain", "count"]
            )

        return pd.DataFrame.from_records(records)

    def __repr__(self):
        cols = ["mean", "sd"] + [f"q_{q}" for q in self.config["quantiles"]]
        cols += ["ess_bulk", "ess_tail", "rhat"]
        df = self.to_dataframe()
        txt = "Parameter summary:\n\n" + repr(df[[c for c in cols if c in df]])

        error_df = self.error_df()
        if not error_df.empty:
            counts = error_df.groupby(["error_msg", "phase"])["count"].sum()
            txt += "\n\nError summary:\n\n" + repr(counts)

        return txt
