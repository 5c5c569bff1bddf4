"""Exception hierarchy for oauthpipe.

All exceptions inherit from :class:`OAuthPipeError`, which carries a
``kind`` attribute naming the error category and an optional ``details``
payload handed to the configured error handlers.  Callers that only care
about "something in the flow failed" catch ``OAuthPipeError``; callers that
need to distinguish configuration mistakes from transport failures catch the
subclasses.

Subclass hierarchy::

    OAuthPipeError              (kind "error")
    +-- ConfigError             (kind "configuration")
    +-- ResolutionError         (kind "resolution")
    +-- TransportError          (kind "transport")
    |   +-- ResponseStatusError (kind "transport")
    |   +-- RequestTimeoutError (kind "transport")
    +-- ResponseValidationError (kind "validation")
    +-- ProxyError              (kind "proxy")
    +-- BridgeError             (kind "bridge")
    +-- ProviderError           (kind "provider")

Exhausted retries are deliberately *not* an exception: the executor returns
a terminal ``{"error": "Max Retries Reached"}`` payload instead so callers
can tell "gave up after retrying" from "refused to retry".
"""

from __future__ import annotations

from typing import Any, Optional


class OAuthPipeError(Exception):
    """Base exception for all oauthpipe errors.

    Args:
        message: Human-readable error description.
        details: Optional extra context passed to error handlers alongside
            the exception (defaults to *message*).
    """

    kind: str = "error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.details = details if details is not None else message
        self.reported = False


class ConfigError(OAuthPipeError):
    """Raised for configuration problems (missing provider, bad step descriptor, unknown library function)."""

    kind = "configuration"


class ResolutionError(OAuthPipeError):
    """Raised when a parameter value cannot be resolved (missing reference, empty function result)."""

    kind = "resolution"


class TransportError(OAuthPipeError):
    """Raised on network-level failures and non-2xx responses.

    Attributes:
        status_code: HTTP status of the failed response, ``0`` when no
            response was received.
    """

    kind = "transport"

    def __init__(self, message: str, status_code: int = 0, details: Any = None) -> None:
        super().__init__(message, details)
        self.status_code = status_code


class ResponseStatusError(TransportError):
    """Raised when the provider answers with a non-2xx HTTP status."""


class RequestTimeoutError(TransportError):
    """Raised when a single attempt exceeds its timeout and is aborted."""


class ResponseValidationError(OAuthPipeError):
    """Raised when a configured validator rejects a response."""

    kind = "validation"


class ProxyError(OAuthPipeError):
    """Raised when a proxy endpoint answers without ``{"status": "success", "data": ...}``."""

    kind = "proxy"


class BridgeError(OAuthPipeError):
    """Raised when redirect state cannot be persisted or recovered."""

    kind = "bridge"


class ProviderError(OAuthPipeError):
    """Raised when a provider name is unknown or its flow cannot start."""

    kind = "provider"


def status_code_of(error: Optional[BaseException]) -> int:
    """Return the HTTP status carried by *error*, or ``0``."""
    return getattr(error, "status_code", 0) or 0
