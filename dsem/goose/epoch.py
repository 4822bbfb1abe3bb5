"""
# MCMC epochs

A run is divided into epochs. The first epoch records the initial values, the
adaptation epochs form the warmup, and the posterior epochs hold the retained draws.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, cast

from .pytree import register_dataclass_as_pytree


class EpochType(IntEnum):
    """Indicates which phase of the run the epoch belongs to."""

    INITIAL_VALUES = 0
    FAST_ADAPTATION = 1
    """Only the step size is adapted."""
    SLOW_ADAPTATION = 2
    """The step size is adapted and the mass matrix is estimated at the end."""
    POSTERIOR = 3
    """Tuning parameters are frozen, draws are retained."""

    @staticmethod
    def is_adaptation(epoch_type: EpochType) -> bool:
        """
        Returns `True` if the epoch is part of the warmup. Implemented as a static
        method to make it jittable.
        """
        lhs = EpochType.INITIAL_VALUES < epoch_type
        rhs = epoch_type < EpochType.POSTERIOR
        # `*` instead of `and` for jax.jit, `cast` is a no-op for mypy
        return cast(bool, lhs * rhs)


@register_dataclass_as_pytree
@dataclass
class EpochConfig:
    type: EpochType
    duration: int
    thinning: int = 1

    def to_state(self, nth_epoch: int, time_before_epoch: int) -> EpochState:
        return EpochState(
            config=self,
            nth_epoch=nth_epoch,
            time=time_before_epoch,
            time_before_epoch=time_before_epoch,
            time_in_epoch=0,
        )


@register_dataclass_as_pytree
@dataclass
class EpochState:
    config: EpochConfig
    nth_epoch: int
    time: int
    time_before_epoch: int
    time_in_epoch: int

    def time_left(self) -> int:
        return self.config.duration - self.time_in_epoch

    def advance_time(self, by: int):
        self.time = self.time + by
        self.time_in_epoch = self.time_in_epoch + by


class EpochManager:
    """
    Hands out :class:`.EpochState` objects with consistent time values for a sequence
    of :class:`.EpochConfig` objects.

    The manager enforces these invariants:

    - The first epoch is an initial values epoch of duration 1, and no other epoch is.
    - Every epoch has a duration of at least 1.
    - An adaptation epoch may not follow a posterior epoch.
    - Thinning is only allowed in posterior epochs, and their duration must be a
      multiple of the thinning. Mass matrix tuning relies on the complete history.
    """

    def __init__(self, configs: Iterable[EpochConfig] | None = None):
        self._configs: list[EpochConfig] = []
        self._next_epoch_ptr = 0
        self._next_start_time = 0

        if configs is not None:
            for config in configs:
                self.append(config)

    @property
    def configs(self) -> tuple[EpochConfig, ...]:
        return tuple(self._configs)

    def append(self, config: EpochConfig):
        """Appends an :class:`.EpochConfig` to the list of epochs."""
        if not self._configs and config.type != EpochType.INITIAL_VALUES:
            raise RuntimeError("First epoch must be of type INITIAL_VALUES")

        if config.type == EpochType.INITIAL_VALUES:
            if self._configs:
                raise RuntimeError("Only the first epoch may be of type INITIAL_VALUES")

            if config.duration != 1:
                raise RuntimeError("Epochs of type INITIAL_VALUES must have duration 1")

        if (
            EpochType.is_adaptation(config.type)
            and self._configs[-1].type == EpochType.POSTERIOR
        ):
            raise RuntimeError(
                "Adaptation epochs may not follow an epoch of type POSTERIOR"
            )

        if config.duration < 1:
            raise RuntimeError("Duration must be greater than or equal to 1")

        if config.thinning < 1:
            raise RuntimeError("Thinning must be greater than or equal to 1")

        if config.thinning != 1:
            if config.type != EpochType.POSTERIOR:
                raise RuntimeError("Thinning is only supported in POSTERIOR epochs")

            if config.duration % config.thinning != 0:
                raise RuntimeError("Duration must be a multiple of thinning")

        self._configs.append(config)

    def has_more(self) -> bool:
        """Whether :meth:`.next` can return another epoch."""
        return self._next_epoch_ptr < len(self._configs)

    def next(self) -> EpochState:
        """
        Returns the next epoch with an initialized state.

        Raises a `RuntimeError` if there are no more epoch configs to return.
        """
        if not self.has_more():
            raise RuntimeError("No epochs in manager")

        config = self._configs[self._next_epoch_ptr]
        state = config.to_state(self._next_epoch_ptr, self._next_start_time)
        self._next_start_time += config.duration
        self._next_epoch_ptr += 1
        return state
