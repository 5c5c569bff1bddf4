"""Error handler routing.

Every failure in a flow is reported to the *nearest* configured handler
before it propagates: a step-level ``on_error`` wins over the stage's
observability ``on_error``, which wins over the global handler.  A handler
receives ``(error, details)`` and may merely record the failure or raise an
exception of its own, which then replaces the original one.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, NoReturn, Optional

from oauthpipe.exceptions import OAuthPipeError

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException, Any], Any]


def nearest_handler(*candidates: Optional[ErrorHandler]) -> Optional[ErrorHandler]:
    """Return the first non-``None`` handler from *candidates*."""
    for handler in candidates:
        if handler is not None:
            return handler
    return None


def report(error: BaseException, *handlers: Optional[ErrorHandler]) -> None:
    """Hand *error* to the nearest handler without raising it.

    An error is reported at most once; the orchestrators use this to act as
    a backstop for failures no step-level handler has seen yet.
    """
    if getattr(error, "reported", False):
        return
    handler = nearest_handler(*handlers)
    details = getattr(error, "details", str(error))
    if isinstance(error, OAuthPipeError):
        error.reported = True
    if handler is None:
        logger.debug("No error handler configured for %s: %s", type(error).__name__, error)
        return
    handler(error, details)


def raise_error(error: OAuthPipeError, *handlers: Optional[ErrorHandler]) -> NoReturn:
    """Report *error* to the nearest handler, then raise it.

    Args:
        error: The exception to surface.
        *handlers: Candidate handlers, nearest first.

    Raises:
        OAuthPipeError: Always -- *error* itself, unless the handler raised
            a different exception first.
    """
    report(error, *handlers)
    raise error
