"""
# MCMC engine

Runs all chains of one kernel through a sequence of epochs. The chains are
vectorized with ``jax.vmap`` and each chunk of transitions is compiled into a single
``jax.lax.scan``. Between two chunks, control returns to Python, which is where
progress is reported and cancellation requests are honored.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import NamedTuple, Sequence

import jax
import jax.numpy as jnp
import numpy as np
from tqdm import tqdm

from .chain import EpochChainManager, ListChain
from .epoch import EpochConfig, EpochManager, EpochState, EpochType
from .kernel import ChainState
from .pytree import as_strong_pytree, register_dataclass_as_pytree
from .types import Array, Kernel, KeyArray, PyTree, TransitionInfo

logger = logging.getLogger(__name__)


class KernelErrorLog(NamedTuple):
    """
    The transitions in which an error occurred in at least one chain.

    - ``transition`` is a 1-D array (time).
    - ``error_codes`` is a 2-D array (chain, time).
    """

    kernel_ident: str
    kernel_cls: type
    transition: np.ndarray
    error_codes: np.ndarray

    def count(self) -> dict[str, int]:
        """Counts the error codes across chains and transitions by message."""

        codes, counts = np.unique(self.error_codes, return_counts=True)
        error_book = getattr(self.kernel_cls, "error_book", {})

        return {
            error_book.get(int(code), f"error code {code}"): int(n)
            for code, n in zip(codes, counts)
            if code != 0
        }


@partial(jax.jit, static_argnums=1)
def _split_keys(keys, n):
    return jax.lax.map(lambda key: jax.random.split(key, n), keys)


def _add_time_dimension(x: PyTree) -> PyTree:
    """Adds a time dimension of size 1 as the second axis of each leaf."""
    return jax.tree_util.tree_map(lambda y: jnp.expand_dims(y, 1), x)


@register_dataclass_as_pytree
@dataclass(frozen=True)
class Carry:
    kernel_state: PyTree
    chain_state: ChainState
    epoch: EpochState


@dataclass
class SamplingResults:
    """
    The results of the MCMC engine. The positions are flat unconstrained parameter
    vectors with the dimensions ``[chain, time, size]``.
    """

    positions: EpochChainManager
    transition_infos: EpochChainManager
    tuning_infos: ListChain
    kernel_cls: type
    kernel_ident: str
    cancelled: bool = False

    def get_samples(self) -> Array:
        """All positions, including the initial values and the warmup."""

        samples = self.positions.combine_all()

        if samples is None:
            raise RuntimeError(f"No samples in {self!r}")

        return samples

    def get_posterior_samples(self) -> Array | None:
        """The positions of the posterior epochs, ``None`` if there are none."""
        return self.positions.combine_filtered(
            lambda config: config.type == EpochType.POSTERIOR
        )

    def get_posterior_transition_infos(self) -> TransitionInfo | None:
        return self.transition_infos.combine_filtered(
            lambda config: config.type == EpochType.POSTERIOR
        )

    def get_warmup_transition_infos(self) -> TransitionInfo | None:
        return self.transition_infos.combine_filtered(
            lambda config: EpochType.is_adaptation(config.type)
        )

    def get_tuning_infos(self) -> PyTree | None:
        return self.tuning_infos.get()

    def get_tuning_times(self) -> Array | None:
        infos = self.tuning_infos.get()
        return None if infos is None else infos.time

    def num_posterior_draws(self) -> int:
        samples = self.get_posterior_samples()
        return 0 if samples is None else int(samples.shape[1])

    def divergences(self, posterior_only: bool = True) -> np.ndarray:
        """The number of divergent transitions per chain."""

        if posterior_only:
            infos = self.get_posterior_transition_infos()
        else:
            infos = self.transition_infos.combine_all()

        if infos is None:
            return np.zeros(0, dtype=int)

        return np.asarray(infos.divergent).sum(axis=1)

    def get_error_log(self, posterior_only: bool = False) -> KernelErrorLog | None:
        """
        The error log of the kernel. ``None`` if there are no transitions in the
        requested epochs.
        """

        if posterior_only:
            infos = self.get_posterior_transition_infos()
        else:
            infos = self.transition_infos.combine_all()

        if infos is None:
            return None

        error_codes = np.asarray(infos.error_code)
        mask = np.any(error_codes != 0, axis=0)
        transition = np.flatnonzero(mask)

        return KernelErrorLog(
            self.kernel_ident, self.kernel_cls, transition, error_codes[:, mask]
        )


class Engine:
    """
    MCMC engine for one transition kernel and any number of chains.

    Parameters
    ----------
    seeds
        One PRNG key per chain, shape ``(chains, 2)``.
    chain_states
        The initial :class:`.ChainState` of every chain, batched along the first
        axis.
    kernel
        The transition kernel. Its log-density must be set.
    epoch_configs
        The epochs to run, see :func:`.stan_epochs`.
    jitted_sample_duration
        The number of transitions compiled into one chunk. An epoch that is not a
        multiple of it ends with a shorter chunk, which is compiled separately.
    show_progress
        Whether to show progress bars and log the progress.
    cancel
        An event that stops the run between two chunks when it is set.
    """

    def __init__(
        self,
        seeds: KeyArray,
        chain_states: ChainState,
        kernel: Kernel,
        epoch_configs: Sequence[EpochConfig],
        jitted_sample_duration: int,
        show_progress: bool = True,
        cancel: threading.Event | None = None,
    ):
        if not kernel.has_log_density():
            raise RuntimeError(f"Log-density of {kernel!r} not set")

        self._seeds = seeds
        self._prng_key = seeds
        self._chain_states = chain_states
        self._kernel = kernel
        self._jitted_sample_duration = jitted_sample_duration
        self._show_progress = show_progress
        self._cancel = cancel
        self._cancelled = False

        self._epoch_manager = EpochManager(epoch_configs)
        self._warmup_has_ended = False

        self._position_chain: EpochChainManager = EpochChainManager(
            apply_thinning=True
        )
        self._transition_info_chain: EpochChainManager = EpochChainManager()
        self._tuning_info_chain: ListChain = ListChain()

        keys = self._split_prng_key_one()
        self._kernel_states = jax.jit(jax.vmap(self._kernel.init_state))(
            keys, self._chain_states
        )

        self._epoch: EpochState | None = None

        self._sample_many_jitted = jax.jit(
            jax.vmap(
                self._sample_many,
                in_axes=(0, None, 0, 0),
                out_axes=(None, 0, 0, 0, 0),
            )
        )

    @property
    def current_epoch(self) -> EpochState:
        """
        Returns the current epoch.

        Raises a `RuntimeError` if no epoch is active.
        """
        if self._epoch is None:
            raise RuntimeError("No active epoch")

        return self._epoch

    @property
    def kernel(self) -> Kernel:
        return self._kernel

    @property
    def kernel_states(self) -> PyTree:
        """The current kernel states, batched along the chains."""
        return self._kernel_states

    @property
    def chain_states(self) -> ChainState:
        return self._chain_states

    @property
    def cancelled(self) -> bool:
        """Whether the run was stopped by the cancellation event."""
        return self._cancelled

    def _cancel_requested(self) -> bool:
        if self._cancel is not None and self._cancel.is_set():
            if not self._cancelled:
                logger.warning("Sampling cancelled, keeping the completed draws")
            self._cancelled = True

        return self._cancelled

    def sample_all_epochs(self):
        """
        Runs all remaining epochs, including the tuning between them. Stops early
        if the cancellation event is set.
        """
        while self._epoch_manager.has_more() and not self._cancel_requested():
            self.sample_next_epoch()

    def sample_next_epoch(self):
        """Runs the next epoch, assuming no epoch is active."""
        self._start_epoch()

        if self.current_epoch.config.type == EpochType.INITIAL_VALUES:
            self._handle_initial_values_epoch()
            return

        self._kernel_start_epoch()

        duration = self.current_epoch.config.duration
        epoch_type = self.current_epoch.config.type.name

        if self._show_progress:
            logger.info(
                f"Starting epoch: {epoch_type}, {duration} transitions, "
                f"{self._jitted_sample_duration} jitted together"
            )

        self._sample_for_duration(duration)

        if self._cancelled:
            self._epoch = None
            return

        self._end_epoch()

    def is_sampling_done(self) -> bool:
        """Whether all epochs have been sampled or the run was cancelled."""
        return self._cancelled or not self._epoch_manager.has_more()

    def get_results(self) -> SamplingResults:
        return SamplingResults(
            positions=self._position_chain,
            transition_infos=self._transition_info_chain,
            tuning_infos=self._tuning_info_chain,
            kernel_cls=type(self._kernel),
            kernel_ident=self._kernel.identifier,
            cancelled=self._cancelled,
        )

    def _split_prng_key(self, n: int = 1) -> KeyArray:
        keys = _split_keys(self._prng_key, n + 1)
        self._prng_key = keys[:, 0, :]
        return keys[:, 1:, :]

    def _split_prng_key_one(self) -> KeyArray:
        return self._split_prng_key(1)[:, 0, :]

    def _handle_initial_values_epoch(self):
        self.current_epoch.advance_time(1)
        self._position_chain.append(
            _add_time_dimension(self._chain_states.position)
        )
        self._epoch = None

    def _start_epoch(self):
        if self._epoch is not None:
            raise RuntimeError("Epoch is active and not completed")

        self._epoch = self._epoch_manager.next()

        if (
            not self._warmup_has_ended
            and self.current_epoch.config.type == EpochType.POSTERIOR
        ):
            self._end_warmup()

        self._position_chain.advance_epoch(self.current_epoch.config)
        self._transition_info_chain.advance_epoch(self.current_epoch.config)

    def _kernel_start_epoch(self):
        keys = self._split_prng_key_one()
        self._kernel_states = jax.vmap(
            self._kernel.start_epoch, in_axes=(0, 0, 0, None)
        )(keys, self._kernel_states, self._chain_states, self.current_epoch)

    def _end_warmup(self):
        """Freezes the tuning parameters. Only posterior epochs can follow."""

        keys = self._split_prng_key_one()
        outcome = jax.jit(jax.vmap(self._kernel.end_warmup))(
            keys, self._kernel_states, self._chain_states
        )
        self._kernel_states = outcome.kernel_state
        self._warmup_has_ended = True

        error_codes = np.asarray(outcome.error_code)
        if np.any(error_codes != 0):
            logger.warning(
                f"Warmup error codes for {self._kernel.identifier}: {error_codes}"
            )

        step_size = getattr(self._kernel_states, "step_size", None)
        if step_size is not None:
            logger.info(
                f"Finished warmup, step sizes: "
                f"{', '.join(f'{s:.3g}' for s in np.asarray(step_size))}"
            )
        else:
            logger.info("Finished warmup")

    def _end_epoch(self):
        epoch = self.current_epoch

        keys = self._split_prng_key_one()
        self._kernel_states = jax.vmap(
            self._kernel.end_epoch, in_axes=(0, 0, 0, None)
        )(keys, self._kernel_states, self._chain_states, epoch)

        self._tune_kernel(epoch)

        if self._show_progress:
            infos = self._transition_info_chain.get_current_chain().get()

            if infos is not None:
                error_codes = np.asarray(infos.error_code)
                num_errors = np.sum(error_codes != 0, axis=1)

                if np.any(num_errors != 0):
                    logger.warning(
                        f"Errors per chain for {self._kernel.identifier}: "
                        f"{', '.join(map(str, num_errors))} / "
                        f"{error_codes.shape[1]} transitions"
                    )

            logger.info("Finished epoch")

        self._epoch = None

    def _tune_kernel(self, epoch: EpochState):
        if not EpochType.is_adaptation(epoch.config.type):
            return

        keys = self._split_prng_key_one()

        if self._kernel.needs_history:
            history = self._position_chain.get_current_chain().get()
        else:
            history = None

        outcome = jax.jit(jax.vmap(self._kernel.tune, in_axes=(0, 0, 0, None, 0)))(
            keys, self._kernel_states, self._chain_states, epoch, history
        )

        self._kernel_states = outcome.kernel_state
        self._tuning_info_chain.append(_add_time_dimension(outcome.info))

    def _sample_many(
        self,
        keys: KeyArray,
        epoch: EpochState,
        kernel_state: PyTree,
        chain_state: ChainState,
    ) -> tuple[EpochState, PyTree, ChainState, Array, TransitionInfo]:
        def scan_f(carry: Carry, key: KeyArray):
            epoch = carry.epoch
            out = self._kernel.transition(
                key, carry.kernel_state, carry.chain_state, epoch
            )
            epoch.advance_time(1)
            new_carry = Carry(out.kernel_state, out.chain_state, epoch)
            return new_carry, (out.chain_state.position, out.info)

        carry, (positions, infos) = jax.lax.scan(
            scan_f, Carry(kernel_state, chain_state, epoch), keys
        )

        return carry.epoch, carry.kernel_state, carry.chain_state, positions, infos

    def _sample_for_duration(self, duration: int):
        if self.current_epoch.time_left() < duration:
            raise RuntimeError("Not enough time left in epoch")

        # non-weak arrays avoid recompilation
        self._epoch = as_strong_pytree(self._epoch)
        self._kernel_states = as_strong_pytree(self._kernel_states)
        self._chain_states = as_strong_pytree(self._chain_states)

        num_chunks, remainder = divmod(duration, self._jitted_sample_duration)
        it = [self._jitted_sample_duration] * num_chunks

        # the remainder is compiled once for its own length
        if remainder:
            it.append(remainder)

        if self._show_progress:
            it = tqdm(it, ncols=80, disable=None, unit="chunk")

        for chunk in it:
            if self._cancel_requested():
                break

            keys = self._split_prng_key(chunk)
            epoch, kernel_states, chain_states, positions, infos = (
                self._sample_many_jitted(
                    keys, self.current_epoch, self._kernel_states, self._chain_states
                )
            )

            self._epoch = epoch
            self._kernel_states = kernel_states
            self._chain_states = chain_states
            self._position_chain.append(positions)
            self._transition_info_chain.append(infos)
