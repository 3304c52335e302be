"""Logging for kernel_bridge.

The package logger only carries a NullHandler; output is opt-in through
configure_logging(), which the ``kbridge`` CLI calls.  KERNEL_BRIDGE_LOG_LEVEL
sets the initial level (e.g. "DEBUG").

Records are handed to a QueueListener thread before reaching the terminal:
the supervisor loop logs every stderr line the runtime writes and must not
wait on a slow terminal.
"""

import atexit
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME = "kernel_bridge"

_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_library_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_library_logger.addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("KERNEL_BRIDGE_LOG_LEVEL", "").strip().upper())
if _env_level:
    _library_logger.setLevel(_env_level)

_listener: logging.handlers.QueueListener | None = None


class _EchoHandler(logging.Handler):
    """Dimmed stderr output through click (ANSI stripped off a TTY)."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def get_logger(name: str) -> logging.Logger:
    """Module logger; ``name`` is the module's ``__name__`` under kernel_bridge."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send kernel_bridge records to stderr. Safe to call more than once.

    Args:
        level: Log level; overrides KERNEL_BRIDGE_LOG_LEVEL.
        quiet: Only errors. Takes precedence over ``level``.
    """
    global _listener
    if _listener is None:
        records: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
        echo = _EchoHandler()
        echo.setFormatter(logging.Formatter(_FORMAT, _DATE_FORMAT))
        _listener = logging.handlers.QueueListener(records, echo)
        _listener.start()
        atexit.register(_listener.stop)
        _library_logger.addHandler(logging.handlers.QueueHandler(records))

    if quiet:
        _library_logger.setLevel(logging.ERROR)
    elif level is not None:
        _library_logger.setLevel(level)
