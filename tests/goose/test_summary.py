import threading

import jax.numpy as jnp
import numpy as np
import pytest

import dsem.goose as gs
from dsem.goose.chain import EpochChainManager, ListChain
from dsem.goose.engine import SamplingResults
from dsem.goose.summary import Summary

rng = np.random.default_rng(1337)


def messages(summary: Summary) -> list[str]:
    return [str(w) for w in summary.convergence_warnings()]


def test_default_position(result: SamplingResults):
    summary = Summary(result)

    assert summary.quantities["mean"]["theta"].shape == (2,)
    assert summary.quantities["quantile"]["theta"].shape == (3, 2)
    assert summary.quantities["hdi"]["theta"].shape == (2, 2)
    assert summary.quantities["rhat"]["theta"].shape == (2,)
    assert summary.sample_info == {
        "num_chains": 2,
        "sample_size_per_chain": 100,
        "warmup_size_per_chain": 100,
    }
    assert summary.num_draws == 200


def test_quantiles_are_ordered(result: SamplingResults):
    summary = Summary(result, quantiles=(0.1, 0.5, 0.9))
    q = summary.quantities["quantile"]["theta"]

    assert np.all(q[0] < q[1])
    assert np.all(q[1] < q[2])


def test_to_dataframe(result: SamplingResults):
    df = Summary(result).to_dataframe()

    assert list(df.index) == ["theta[0]", "theta[1]"]
    assert df.index.name == "parameter"
    assert list(df.columns[:10]) == [
        "variable",
        "var_index",
        "mean",
        "sd",
        "q_0.05",
        "q_0.5",
        "q_0.95",
        "hdi_low",
        "hdi_high",
        "sample_size",
    ]
    assert {"ess_bulk", "ess_tail", "mcse_mean", "rhat"} <= set(df.columns)
    assert df.loc["theta[1]", "var_index"] == (1,)
    assert np.all(df["sample_size"] == 200)


def test_element_names():
    position = {
        "x": rng.normal(size=(2, 50)),
        "beta": rng.normal(size=(2, 50, 3)),
        "u": rng.normal(size=(2, 50, 2, 2)),
    }

    df = Summary(_empty_results(), position).to_dataframe()

    assert list(df.index) == [
        "x",
        "beta[0]",
        "beta[1]",
        "beta[2]",
        "u[0,0]",
        "u[0,1]",
        "u[1,0]",
        "u[1,1]",
    ]


def test_selected(result: SamplingResults):
    position = {"a": rng.normal(size=(2, 50)), "b": rng.normal(size=(2, 50))}

    summary = Summary(result, position, selected=["a"])
    assert list(summary.quantities["mean"]) == ["a"]

    with pytest.raises(ValueError, match="Nothing"):
        Summary(result, position, selected=["c"])


def test_iid_draws_pass(result: SamplingResults):
    summary = Summary(result, {"x": rng.normal(size=(4, 1000))})

    assert not any("R-hat" in m for m in messages(summary))
    assert not any("ESS" in m for m in messages(summary))


def test_shifted_chains_fail_rhat(result: SamplingResults):
    draws = rng.normal(size=(4, 500)) + 10.0 * np.arange(4)[:, None]
    summary = Summary(result, {"x": draws})

    assert any(m.startswith("R-hat above 1.01 for x") for m in messages(summary))
    assert not summary.reliable


def test_random_walk_fails_ess(result: SamplingResults):
    draws = np.cumsum(rng.normal(size=(4, 1000)), axis=1)
    summary = Summary(result, {"x": draws})

    assert any(m.startswith("Bulk ESS below 400") for m in messages(summary))


def test_thresholds_are_configurable(result: SamplingResults):
    draws = np.cumsum(rng.normal(size=(4, 1000)), axis=1)
    summary = Summary(result, {"x": draws}, rhat_threshold=100.0, min_ess_ratio=1e-6)

    assert not any("R-hat" in m for m in messages(summary))
    assert not any("ESS" in m for m in messages(summary))


def test_single_chain():
    summary = Summary(_empty_results(), {"x": rng.normal(size=(1, 201))})
    rhat = summary.quantities["rhat"]["x"]

    assert rhat.shape == ()
    assert np.isfinite(rhat)
    assert rhat < 1.05
    assert "rhat" in summary.to_dataframe().columns
    assert "Parameter summary" in repr(summary)


def test_divergences_are_reported(box):
    builder = gs.EngineBuilder(3, 2)
    builder.set_duration(warmup_duration=0, posterior_duration=100)
    builder.set_log_density(box)
    builder.set_initial_values(jnp.zeros(1))
    builder.set_kernel(gs.HMCKernel(initial_step_size=0.5, num_integration_steps=10))
    builder.show_progress = False

    engine = builder.build()
    engine.sample_all_epochs()
    results = engine.get_results()

    summary = Summary(results)
    num_divergent = int(np.sum(results.divergences()))

    assert num_divergent > 0
    assert np.array_equal(summary.divergences, results.divergences())
    assert np.all(summary.warmup_divergences == 0)
    assert any(
        m.startswith(f"{num_divergent} divergent transitions after warmup")
        for m in messages(summary)
    )

    error_df = summary.error_df()
    assert list(error_df.columns) == [
        "error_code",
        "error_msg",
        "phase",
        "chain",
        "count",
    ]

    posterior = error_df[error_df["phase"] == "posterior"]
    assert set(posterior["error_msg"]) == {"divergent transition"}
    assert posterior["count"].sum() == num_divergent
    assert "Error summary" in repr(summary)


def test_empty_error_df():
    summary = Summary(_empty_results(), {"x": rng.normal(size=(2, 50))})

    assert summary.error_df().empty
    assert summary.error_summary == {}


def test_no_posterior_samples(gaussian):
    cancel = threading.Event()
    cancel.set()

    builder = gs.EngineBuilder(0, 2)
    builder.set_duration(warmup_duration=0, posterior_duration=10)
    builder.set_log_density(gaussian([1.0]))
    builder.set_initial_values(jnp.zeros(1))
    builder.set_kernel(gs.HMCKernel())
    builder.set_cancel_event(cancel)
    builder.show_progress = False

    engine = builder.build()
    engine.sample_all_epochs()

    with pytest.raises(RuntimeError, match="No posterior samples"):
        Summary(engine.get_results())


def _empty_results() -> SamplingResults:
    return SamplingResults(
        positions=EpochChainManager(),
        transition_infos=EpochChainManager(),
        tuning_infos=ListChain(),
        kernel_cls=gs.HMCKernel,
        kernel_ident="kernel_00",
    )


def test_single_chain_drifting():
    # the halves of a trending chain disagree
    draws = np.linspace(0.0, 10.0, 200)[None, :] + rng.normal(size=(1, 200))
    summary = Summary(_empty_results(), {"x": draws})

    assert summary.quantities["rhat"]["x"] > 1.5
    assert any(m.startswith("R-hat above") for m in messages(summary))
