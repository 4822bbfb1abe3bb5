import jax
import pytest

from dsem.goose.epoch import EpochConfig, EpochManager, EpochType


def test_epoch_state_time() -> None:
    state = EpochConfig(EpochType.POSTERIOR, 10, 1).to_state(0, 0)

    assert state.time_left() == 10

    state.advance_time(5)
    assert state.time_left() == 5
    assert state.time == 5
    assert state.time_in_epoch == 5

    state.advance_time(5)
    assert state.time_left() == 0
    assert state.time == 10
    assert state.time_in_epoch == 10

    state = EpochConfig(EpochType.POSTERIOR, 10, 1).to_state(1, 10)
    assert state.time_left() == 10
    assert state.time == 10
    assert state.time_in_epoch == 0
    state.advance_time(10)
    assert state.time == 20
    assert state.time_in_epoch == 10
    assert state.time_left() == 0


def test_is_adaptation() -> None:
    assert not EpochType.is_adaptation(EpochType.INITIAL_VALUES)
    assert EpochType.is_adaptation(EpochType.FAST_ADAPTATION)
    assert EpochType.is_adaptation(EpochType.SLOW_ADAPTATION)
    assert not EpochType.is_adaptation(EpochType.POSTERIOR)


def test_is_adaptation_jitted() -> None:
    jis_adapt = jax.jit(EpochType.is_adaptation)

    assert not jis_adapt(EpochType.INITIAL_VALUES)
    assert jis_adapt(EpochType.FAST_ADAPTATION)
    assert jis_adapt(EpochType.SLOW_ADAPTATION)
    assert not jis_adapt(EpochType.POSTERIOR)


def test_epoch_manager() -> None:
    manager = EpochManager(
        [
            EpochConfig(EpochType.INITIAL_VALUES, 1),
            EpochConfig(EpochType.FAST_ADAPTATION, 20),
            EpochConfig(EpochType.POSTERIOR, 30, 3),
        ]
    )

    assert len(manager.configs) == 3

    times = []
    while manager.has_more():
        state = manager.next()
        times.append((state.nth_epoch, state.time, state.time_before_epoch))

    assert times == [(0, 0, 0), (1, 1, 1), (2, 21, 21)]

    with pytest.raises(RuntimeError, match="No epochs"):
        manager.next()


@pytest.mark.parametrize(
    "configs, match",
    [
        ([EpochConfig(EpochType.POSTERIOR, 10)], "First epoch"),
        ([EpochConfig(EpochType.INITIAL_VALUES, 2)], "duration 1"),
        (
            [
                EpochConfig(EpochType.INITIAL_VALUES, 1),
                EpochConfig(EpochType.INITIAL_VALUES, 1),
            ],
            "Only the first",
        ),
        (
            [
                EpochConfig(EpochType.INITIAL_VALUES, 1),
                EpochConfig(EpochType.POSTERIOR, 10),
                EpochConfig(EpochType.SLOW_ADAPTATION, 10),
            ],
            "may not follow",
        ),
        (
            [
                EpochConfig(EpochType.INITIAL_VALUES, 1),
                EpochConfig(EpochType.FAST_ADAPTATION, 0),
            ],
            "Duration",
        ),
        (
            [
                EpochConfig(EpochType.INITIAL_VALUES, 1),
                EpochConfig(EpochType.SLOW_ADAPTATION, 10, 2),
            ],
            "only supported in POSTERIOR",
        ),
        (
            [
                EpochConfig(EpochType.INITIAL_VALUES, 1),
                EpochConfig(EpochType.POSTERIOR, 10, 3),
            ],
            "multiple of thinning",
        ),
    ],
)
def test_epoch_manager_rejects(configs, match) -> None:
    with pytest.raises(RuntimeError, match=match):
        EpochManager(configs)
