"""
Panel datasets for the AR(1) DSEM.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
import pandas as pd
import tensorflow_probability.substrates.jax.distributions as tfd

from .errors import DatasetError

logger = logging.getLogger(__name__)

Array = Any


def _as_rows(y: Any) -> list[np.ndarray]:
    """Splits ``y`` into one float array per subject without assuming it is square."""
    if isinstance(y, np.ndarray | jax.Array):
        arr = np.asarray(y, dtype=np.float64)
        if arr.ndim == 1:
            return [arr]
        if arr.ndim == 2:
            return list(arr)
        raise DatasetError(f"Y must be one- or two-dimensional, got {arr.ndim} dims")

    if isinstance(y, str | bytes) or not isinstance(y, Sequence):
        raise DatasetError(f"Y must be a sequence or an array, got {type(y).__name__}")

    if len(y) == 0:
        raise DatasetError("Y must not be empty")

    nested = [isinstance(row, Sequence | np.ndarray) for row in y]

    if not any(nested):
        return [np.asarray(y, dtype=np.float64)]

    if not all(nested):
        raise DatasetError("Y mixes scalars and sequences")

    return [np.asarray(row, dtype=np.float64) for row in y]


@dataclass(frozen=True, eq=False)
class Dataset:
    """
    A fully observed panel of ``n_subj`` subjects with ``n_obs`` timepoints each.

    The observations are stored as a read-only ``(n_subj, n_obs)`` float array. Use
    :meth:`.from_record` or :meth:`.from_frame` to build a dataset from less strict
    inputs; the constructor validates its arguments, too.

    Parameters
    ----------
    y
        Observations, indexed ``[subject, time]``.
    """

    y: np.ndarray

    def __post_init__(self):
        y = np.array(self.y, dtype=np.float64)

        if y.ndim != 2:
            raise DatasetError(f"Y must have shape (N_subj, N_obs), got {y.shape}")

        n_subj, n_obs = y.shape

        if n_subj < 1:
            raise DatasetError("N_subj must be at least 1")

        if n_obs < 2:
            raise DatasetError(
                f"N_obs must be at least 2 so that lag-1 terms exist, got {n_obs}"
            )

        if not np.all(np.isfinite(y)):
            bad = np.argwhere(~np.isfinite(y))
            subj, time = bad[0]
            raise DatasetError(
                f"Y contains {len(bad)} non-finite observation(s), first at "
                f"subject {subj}, time {time}"
            )

        y.flags.writeable = False
        object.__setattr__(self, "y", y)

    @property
    def n_subj(self) -> int:
        return self.y.shape[0]

    @property
    def n_obs(self) -> int:
        return self.y.shape[1]

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Dataset:
        """
        Builds a dataset from a record with the fields ``N_obs``, ``N_subj`` and ``Y``.

        ``Y`` is either a flat sequence of length ``N_obs`` (single subject) or a
        rectangular ``N_subj x N_obs`` array.

        Raises
        ------
        DatasetError
            If a field is missing or the declared counts do not match ``Y``.
        """

        missing = [key for key in ("N_obs", "N_subj", "Y") if key not in record]
        if missing:
            raise DatasetError(f"Record is missing the field(s) {', '.join(missing)}")

        n_obs = int(record["N_obs"])
        n_subj = int(record["N_subj"])

        if n_subj < 1:
            raise DatasetError(f"N_subj must be at least 1, got {n_subj}")

        if n_obs < 2:
            raise DatasetError(
                f"N_obs must be at least 2 so that lag-1 terms exist, got {n_obs}"
            )

        rows = _as_rows(record["Y"])

        if any(row.ndim != 1 for row in rows):
            raise DatasetError("Every subject's observations must be one-dimensional")

        lengths = {len(row) for row in rows}
        if len(lengths) > 1:
            raise DatasetError(
                f"Y is ragged: subjects have between {min(lengths)} and "
                f"{max(lengths)} observations"
            )

        if len(rows) != n_subj:
            raise DatasetError(
                f"N_subj is {n_subj}, but Y holds {len(rows)} subject(s)"
            )

        if lengths != {n_obs}:
            raise DatasetError(
                f"N_obs is {n_obs}, but Y holds {lengths.pop()} observation(s) per "
                "subject"
            )

        return cls(np.stack(rows))

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        subject: str = "subject",
        time: str = "time",
        value: str = "y",
    ) -> Dataset:
        """
        Builds a dataset from a long-format data frame with one row per subject and
        timepoint.

        Subjects and timepoints are sorted. Every subject must be observed at every
        timepoint; missing cells are rejected.
        """

        for column in (subject, time, value):
            if column not in df.columns:
                raise DatasetError(f"Column {column!r} not found in data frame")

        if df.duplicated([subject, time]).any():
            raise DatasetError("Data frame has duplicated (subject, time) rows")

        wide = df.pivot(index=subject, columns=time, values=value).sort_index(axis=0)
        wide = wide.sort_index(axis=1)

        if wide.isna().to_numpy().any():
            raise DatasetError(
                "Data frame does not cover every timepoint for every subject"
            )

        return cls(wide.to_numpy(dtype=np.float64))

    def to_record(self) -> dict[str, Any]:
        """Returns the dataset in the record format accepted by :meth:`.from_record`."""
        return {"N_obs": self.n_obs, "N_subj": self.n_subj, "Y": self.y.tolist()}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n_subj={self.n_subj}, n_obs={self.n_obs})"


def simulate(
    key: Array | int,
    n_subj: int,
    n_obs: int,
    gamma: Sequence[float],
    tau: Sequence[float] = (0.0, 0.0, 0.0),
    burn: int = 50,
) -> Dataset:
    """
    Simulates a dataset from the AR(1) DSEM.

    Each subject's deviations are drawn as ``u[i, k] ~ Normal(0, tau[k])``. The series
    starts at the subject mean and the first ``burn`` timepoints are discarded, so the
    returned observations are (approximately) draws from the stationary process.

    Parameters
    ----------
    key
        A key from ``jax.random.PRNGKey`` or an integer seed.
    n_subj, n_obs
        Shape of the returned panel.
    gamma
        Population mean, log residual SD and autoregression coefficient.
    tau
        SDs of the subject-level deviations. All zero gives identical subjects.
    burn
        Number of discarded leading timepoints.
    """

    if isinstance(key, int):
        key = jax.random.PRNGKey(key)

    gamma_ = jnp.asarray(gamma, dtype=jnp.float32)
    tau_ = jnp.asarray(tau, dtype=jnp.float32)
    key_u, key_eps = jax.random.split(key)

    u = tau_ * jax.random.normal(key_u, (n_subj, 3))
    mu = gamma_[0] + u[:, 0]
    psi = jnp.exp(gamma_[1] + u[:, 1])
    phi = gamma_[2] + u[:, 2]

    if jnp.any(jnp.abs(phi) >= 1.0):
        logger.warning(
            "Some simulated subjects have a non-stationary autoregression coefficient"
        )

    innovations = tfd.Normal(0.0, psi).sample(burn + n_obs, seed=key_eps)

    def step(y_prev, eps):
        y_next = mu + phi * (y_prev - mu) + eps
        return y_next, y_next

    _, ys = jax.lax.scan(step, mu, innovations)
    y = np.asarray(ys[burn:]).T

    return Dataset(y)
