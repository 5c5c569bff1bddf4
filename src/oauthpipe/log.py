"""Logging setup and per-step tracing.

Library modules log through ``logging.getLogger(__name__)`` and never
configure handlers themselves.  Applications that want readable output call
:func:`configure_logging`, which attaches a Rich handler writing to stderr
on the ``oauthpipe`` logger.  Colour is disabled when ``NO_COLOR`` is set or
``TERM=dumb``.

Custom providers may set ``step_logging=True`` to trace every step of their
pipeline.  :class:`StepLog` turns that flag into INFO-level records; with the
flag off the same messages are emitted at DEBUG.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "oauthpipe"

_handler: Optional[logging.Handler] = None


def _should_disable_color() -> bool:
    """Return True when the environment asks for plain output."""
    if os.environ.get("NO_COLOR") is not None:
        return True
    return os.environ.get("TERM") == "dumb"


def configure_logging(level: int | str = logging.INFO, no_color: bool = False) -> logging.Logger:
    """Install a Rich stderr handler on the ``oauthpipe`` logger.

    Calling this more than once replaces the previously installed handler
    instead of stacking a second one.

    Args:
        level: Logging level for the package logger.
        no_color: Force plain, uncoloured output.

    Returns:
        The configured ``oauthpipe`` logger.
    """
    global _handler

    root = logging.getLogger(ROOT_LOGGER)
    if _handler is not None:
        root.removeHandler(_handler)

    console = Console(stderr=True, no_color=no_color or _should_disable_color())
    _handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    _handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(_handler)
    root.setLevel(level)
    return root


def reset_logging() -> None:
    """Remove the handler installed by :func:`configure_logging`."""
    global _handler
    if _handler is not None:
        logging.getLogger(ROOT_LOGGER).removeHandler(_handler)
        _handler = None


class StepLog:
    """Per-provider step tracer.

    Args:
        provider: Provider name prefixed to every message.
        enabled: When ``True`` messages are logged at INFO, else at DEBUG.
        logger: Logger to write to (defaults to ``oauthpipe.pipeline``).
    """

    def __init__(self, provider: str, enabled: bool = False, logger: Optional[logging.Logger] = None) -> None:
        self.provider = provider
        self.enabled = enabled
        self._logger = logger or logging.getLogger(f"{ROOT_LOGGER}.pipeline")

    def __call__(self, message: str, **fields: Any) -> None:
        level = logging.INFO if self.enabled else logging.DEBUG
        if not self._logger.isEnabledFor(level):
            return
        if fields:
            extra = ", ".join(f"{key}={value!r}" for key, value in fields.items())
            self._logger.log(level, "[%s] %s (%s)", self.provider, message, extra)
        else:
            self._logger.log(level, "[%s] %s", self.provider, message)
