"""
# MCMC chains

Storage for the chunks of pytrees produced by the engine. Every leaf has the
dimensions ``[chain, time, ...]``. Chunks are concatenated along the time axis.
"""

from __future__ import annotations

from typing import Callable, Generic, Sequence, TypeVar

import jax
import numpy as np

from .epoch import EpochConfig
from .pytree import concatenate_leaves, slice_leaves
from .types import PyTree

TPyTree = TypeVar("TPyTree", bound=PyTree)


class ListChain(Generic[TPyTree]):
    """Stores chunks in a list and concatenates them lazily."""

    def __init__(self):
        self._chunks: list[TPyTree] = []

    def append(self, chunk: TPyTree) -> None:
        self._chunks.append(chunk)

    def get(self) -> TPyTree | None:
        """All chunks combined into one pytree, ``None`` if the chain is empty."""

        if not self._chunks:
            return None

        if len(self._chunks) > 1:
            self._chunks = [concatenate_leaves(self._chunks, axis=1)]

        return self._chunks[0]


class ListEpochChain(ListChain[TPyTree]):
    """
    A :class:`.ListChain` for one epoch. If thinning is applied, only every
    ``thinning``-th element of the epoch is kept, counting across chunks.
    """

    def __init__(self, epoch: EpochConfig, apply_thinning: bool = False):
        super().__init__()
        self._epoch = epoch
        self._apply_thinning = apply_thinning
        self._seen = 0

    @property
    def epoch(self) -> EpochConfig:
        return self._epoch

    def append(self, chunk: TPyTree) -> None:
        thinning = self._epoch.thinning

        if not self._apply_thinning or thinning == 1:
            super().append(chunk)
            return

        size = jax.tree_util.tree_leaves(chunk)[0].shape[1]
        idx = np.flatnonzero((self._seen + 1 + np.arange(size)) % thinning == 0)
        self._seen += size

        if idx.size > 0:
            super().append(slice_leaves(chunk, np.s_[:, idx, ...]))


class EpochChainManager(Generic[TPyTree]):
    """
    A container for one :class:`.ListEpochChain` per epoch. Chains of several epochs
    can be combined along the time axis.
    """

    def __init__(self, apply_thinning: bool = False) -> None:
        self._chains: list[ListEpochChain[TPyTree]] = []
        self._apply_thinning = apply_thinning

    @property
    def current_epoch(self) -> EpochConfig:
        return self._chains[-1].epoch

    def advance_epoch(self, epoch: EpochConfig) -> None:
        self._chains.append(ListEpochChain(epoch, self._apply_thinning))

    def append(self, chunk: TPyTree) -> None:
        self._chains[-1].append(chunk)

    def get_epochs(self) -> Sequence[EpochConfig]:
        return [chain.epoch for chain in self._chains]

    def get_current_chain(self) -> ListEpochChain[TPyTree]:
        return self._chains[-1]

    def combine_filtered(
        self, predicate: Callable[[EpochConfig], bool]
    ) -> TPyTree | None:
        """
        Combines the epochs whose config satisfies ``predicate``. Returns ``None``
        if none of them holds any elements.
        """

        combined: ListChain[TPyTree] = ListChain()

        for chain in self._chains:
            if predicate(chain.epoch):
                chunk = chain.get()
                if chunk is not None:
                    combined.append(chunk)

        return combined.get()

    def combine_all(self) -> TPyTree | None:
        return self.combine_filtered(lambda _: True)
