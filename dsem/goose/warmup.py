"""
# Warmup schedules
"""

import logging

from .epoch import EpochConfig, EpochType

logger = logging.getLogger(__name__)


def _short_warmup(warmup_duration: int) -> tuple[int, int, int]:
    init_duration = int(0.15 * warmup_duration)
    term_duration = int(0.1 * warmup_duration)
    slow_duration = warmup_duration - init_duration - term_duration
    return init_duration, slow_duration, term_duration


def stan_epochs(
    warmup_duration: int = 1000,
    posterior_duration: int = 1000,
    init_duration: int = 75,
    term_duration: int = 50,
    base_duration: int = 25,
    thinning_posterior: int = 1,
) -> list[EpochConfig]:
    """
    Sets up a list of :class:`.EpochConfig`'s following the Stan Development Team,
    `Stan Reference Manual, HMC algorithm parameters
    <https://mc-stan.org/docs/reference-manual/mcmc.html>`_.

    The warmup starts with a fast adaptation epoch, followed by slow adaptation
    epochs of doubling duration and a final fast adaptation epoch. The last slow
    epoch absorbs the remainder if another doubling would not fit.

    Short warmups are handled like Stan does:

    - If ``warmup_duration`` is less than the sum of the three base durations, the
      warmup is split into 15% fast, 75% slow and 10% fast adaptation.
    - If ``warmup_duration`` is less than 20, only one fast adaptation epoch is used
      and the mass matrix stays at its initial value.
    - If ``warmup_duration`` is 0, there are no adaptation epochs at all.

    Parameters
    ----------
    warmup_duration
        The number of warmup iterations.
    posterior_duration
        The number of posterior iterations, before thinning.
    init_duration
        The duration of the initial fast adaptation epoch.
    term_duration
        The duration of the final fast adaptation epoch.
    base_duration
        The duration of the first slow adaptation epoch.
    thinning_posterior
        Thinning applied in the posterior epoch.
    """

    if warmup_duration < 0:
        raise ValueError("warmup_duration must be non-negative")

    if posterior_duration < 1:
        raise ValueError("posterior_duration must be positive")

    epochs = [EpochConfig(EpochType.INITIAL_VALUES, duration=1, thinning=1)]

    if warmup_duration == 0:
        logger.warning("No warmup, the kernels will not be adapted")

    elif warmup_duration < 20:
        logger.warning(
            f"Warmup too short for mass matrix adaptation ({warmup_duration} < 20), "
            "only the step size will be adapted"
        )
        epochs.append(EpochConfig(EpochType.FAST_ADAPTATION, warmup_duration))

    elif warmup_duration < init_duration + term_duration + base_duration:
        init, slow, term = _short_warmup(warmup_duration)

        logger.info(
            f"Warmup shorter than {init_duration + term_duration + base_duration}, "
            f"using adaptation epochs of {init}, {slow} and {term} iterations"
        )

        epochs.append(EpochConfig(EpochType.FAST_ADAPTATION, init))
        epochs.append(EpochConfig(EpochType.SLOW_ADAPTATION, slow))
        epochs.append(EpochConfig(EpochType.FAST_ADAPTATION, term))

    else:
        epochs.append(EpochConfig(EpochType.FAST_ADAPTATION, init_duration))

        time_left = warmup_duration - init_duration - term_duration
        this_time = base_duration

        while 3 * this_time <= time_left:
            epochs.append(EpochConfig(EpochType.SLOW_ADAPTATION, this_time))
            time_left -= this_time
            this_time *= 2

        epochs.append(EpochConfig(EpochType.SLOW_ADAPTATION, time_left))
        epochs.append(EpochConfig(EpochType.FAST_ADAPTATION, term_duration))

    epochs.append(
        EpochConfig(EpochType.POSTERIOR, posterior_duration, thinning_posterior)
    )

    return epochs
