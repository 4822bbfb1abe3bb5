"""
Logging utilities.

All modules log to children of the ``"dsem"`` logger, for example
``"dsem.goose.engine"``. Importing :mod:`dsem` installs a terminal handler on the
package logger; applications that configure logging themselves should call
:func:`reset_logger` first.
"""

import logging
from pathlib import Path

_DEFAULT_FORMAT = "%(name)s - %(levelname)s - %(message)s"


def _is_dsem_handler(handler: logging.Handler) -> bool:
    return getattr(handler, "_dsem_default", False)


def setup_logger(level: int = logging.INFO) -> None:
    """
    Attaches a ``StreamHandler`` to the ``"dsem"`` logger that prints messages to the
    terminal.

    Messages are not propagated to the root logger, so they are not printed twice if
    the application also logs to the terminal. Calling the function repeatedly does not
    add further handlers.

    The level can be adjusted afterwards like this::

        import logging
        logging.getLogger("dsem").setLevel(logging.WARNING)

    Parameters
    ----------
    level
        The level of the package logger.
    """

    logger = logging.getLogger("dsem")
    logger.setLevel(level)
    logger.propagate = False

    if any(_is_dsem_handler(h) for h in logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    handler._dsem_default = True  # type: ignore[attr-defined]
    logger.addHandler(handler)


def reset_logger() -> None:
    """
    Resets the ``"dsem"`` logger.

    The level is set to ``logging.NOTSET``, messages propagate to the root logger again,
    and *all* handlers are removed. Useful if you want to set up a custom logging
    configuration.
    """

    logger = logging.getLogger("dsem")
    logger.setLevel(logging.NOTSET)
    logger.propagate = True

    for handler in list(logger.handlers):
        logger.removeHandler(handler)


def add_file_handler(
    path: str | Path,
    level: str,
    logger: str = "dsem",
    fmt: str = "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
) -> None:
    """
    Adds a file handler to a logger.

    Parameters
    ----------
    path
        Absolute path to the log file. Missing parent directories are created.
    level
        One of ``"debug"``, ``"info"``, ``"warning"``, ``"error"`` or ``"critical"``.
        The file receives all messages from that level upwards.
    logger
        Name of the logger, e.g. ``"dsem.goose"`` to record only sampler messages.
    fmt
        Format string, see :class:`logging.Formatter`.

    Examples
    --------
    Record sampler warnings in a file::

        import dsem

        dsem.logging.add_file_handler(
            path="/tmp/dsem/sampler.log", level="warning", logger="dsem.goose"
        )
    """

    path = Path(path)

    if not path.is_absolute():
        raise ValueError("Provided path for logging file handler must be absolute")

    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path)
    handler.setLevel(getattr(logging, level.upper()))
    handler.setFormatter(logging.Formatter(fmt, "%Y-%m-%d %H:%M:%S"))

    logging.getLogger(logger).addHandler(handler)
