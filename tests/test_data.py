import numpy as np
import pandas as pd
import pytest

from dsem.data import Dataset, simulate
from dsem.errors import DatasetError


def test_from_record_single_subject() -> None:
    data = Dataset.from_record({"N_obs": 5, "N_subj": 1, "Y": [5, 5, 5, 5, 5]})

    assert data.n_subj == 1
    assert data.n_obs == 5
    assert data.y.shape == (1, 5)
    assert data.y.dtype == np.float64


def test_from_record_nested() -> None:
    y = [[1.0, 2.0, 3.0], [0.5, 0.0, -0.5]]
    data = Dataset.from_record({"N_obs": 3, "N_subj": 2, "Y": y})

    assert data.y.shape == (2, 3)
    assert np.array_equal(data.y, np.array(y))


def test_from_record_array() -> None:
    y = np.arange(12.0).reshape(3, 4)
    data = Dataset.from_record({"N_obs": 4, "N_subj": 3, "Y": y})
    assert np.array_equal(data.y, y)


def test_y_is_read_only() -> None:
    data = Dataset.from_record({"N_obs": 3, "N_subj": 1, "Y": [1, 2, 3]})

    with pytest.raises(ValueError):
        data.y[0, 0] = 10.0


@pytest.mark.parametrize(
    "record, match",
    [
        ({"N_obs": 2, "N_subj": 1}, "missing"),
        ({"N_obs": 1, "N_subj": 1, "Y": [1.0]}, "N_obs must be at least 2"),
        ({"N_obs": 3, "N_subj": 0, "Y": []}, "N_subj must be at least 1"),
        ({"N_obs": 3, "N_subj": 2, "Y": [[1, 2, 3], [1, 2]]}, "ragged"),
        ({"N_obs": 3, "N_subj": 2, "Y": [[1, 2, 3]]}, "N_subj is 2"),
        ({"N_obs": 4, "N_subj": 1, "Y": [1, 2, 3]}, "N_obs is 4"),
        ({"N_obs": 3, "N_subj": 1, "Y": [1, float("nan"), 3]}, "non-finite"),
        ({"N_obs": 3, "N_subj": 1, "Y": [1, [2, 3], 4]}, "mixes"),
        ({"N_obs": 3, "N_subj": 1, "Y": "abc"}, "sequence"),
    ],
)
def test_from_record_rejects(record, match) -> None:
    with pytest.raises(DatasetError, match=match):
        Dataset.from_record(record)


def test_dataset_error_is_value_error() -> None:
    with pytest.raises(ValueError):
        Dataset(np.ones((2, 1)))


def test_constructor_rejects_inf() -> None:
    y = np.ones((2, 4))
    y[1, 2] = np.inf

    with pytest.raises(DatasetError, match="subject 1, time 2"):
        Dataset(y)


def test_to_record() -> None:
    record = {"N_obs": 3, "N_subj": 2, "Y": [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]}
    data = Dataset.from_record(record)

    assert data.to_record() == record
    assert np.array_equal(Dataset.from_record(data.to_record()).y, data.y)


def test_from_frame() -> None:
    df = pd.DataFrame(
        {
            "subject": ["b", "b", "a", "a"],
            "time": [1, 0, 0, 1],
            "y": [4.0, 3.0, 1.0, 2.0],
        }
    )

    data = Dataset.from_frame(df)

    assert np.array_equal(data.y, np.array([[1.0, 2.0], [3.0, 4.0]]))


def test_from_frame_missing_cell() -> None:
    df = pd.DataFrame(
        {"subject": [0, 0, 1], "time": [0, 1, 0], "y": [1.0, 2.0, 3.0]}
    )

    with pytest.raises(DatasetError, match="every timepoint"):
        Dataset.from_frame(df)


def test_from_frame_duplicates() -> None:
    df = pd.DataFrame(
        {"subject": [0, 0, 0], "time": [0, 1, 1], "y": [1.0, 2.0, 3.0]}
    )

    with pytest.raises(DatasetError, match="duplicated"):
        Dataset.from_frame(df)


def test_from_frame_missing_column() -> None:
    df = pd.DataFrame({"id": [0, 0], "time": [0, 1], "y": [1.0, 2.0]})

    with pytest.raises(DatasetError, match="'subject'"):
        Dataset.from_frame(df)


def test_simulate() -> None:
    data = simulate(1, n_subj=4, n_obs=30, gamma=(1.0, 0.0, 0.5), tau=(0.5, 0.1, 0.1))

    assert data.y.shape == (4, 30)
    assert np.all(np.isfinite(data.y))

    again = simulate(1, n_subj=4, n_obs=30, gamma=(1.0, 0.0, 0.5), tau=(0.5, 0.1, 0.1))
    assert np.array_equal(data.y, again.y)

    other = simulate(2, n_subj=4, n_obs=30, gamma=(1.0, 0.0, 0.5), tau=(0.5, 0.1, 0.1))
    assert not np.array_equal(data.y, other.y)


def test_simulate_identical_subjects_share_mean() -> None:
    data = simulate(0, n_subj=2, n_obs=2000, gamma=(3.0, -1.0, 0.2))
    assert np.mean(data.y) == pytest.approx(3.0, abs=0.05)


def test_simulate_warns_if_not_stationary(local_caplog) -> None:
    with local_caplog() as caplog:
        simulate(0, n_subj=1, n_obs=5, gamma=(0.0, 0.0, 1.05), burn=5)

    assert len(caplog.records) == 1
    assert caplog.records[0].levelname == "WARNING"
    assert "non-stationary" in caplog.records[0].message
