"""Library function registry.

Custom-provider configurations reach helper functions by name (see
:class:`~oauthpipe.values.LibraryValue`).  The catalog is fixed: every entry
is a :class:`LibraryFunction` declaring its server implementation, an
optional client implementation, and the contexts it may run in.

Two contexts exist:

* ``"server"`` -- the full catalog.
* ``"client"`` -- the browser-safe subset.  Helpers that need secrets or
  keyed-hash cryptography are either swapped for a server-proxied variant
  (``get_signature``) or unavailable (``hmac_sha1_signature``).

Names are checked when a configuration is validated (:meth:`validate`) and
again when they are looked up for a context (:meth:`require`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from oauthpipe import encoding, oauth1
from oauthpipe.bridge import encode_url_state
from oauthpipe.exceptions import ConfigError
from oauthpipe.redirect import create_form

logger = logging.getLogger(__name__)

CLIENT = "client"
SERVER = "server"
CONTEXTS = (CLIENT, SERVER)


@dataclass(frozen=True)
class LibraryFunction:
    """One catalog entry.

    Attributes:
        name: Identifier used in configurations and on the helper endpoint.
        impl: Implementation used on the server.
        client_impl: Replacement used on the client, if any.
        contexts: Contexts the function may be requested in.
    """

    name: str
    impl: Callable[..., Any]
    client_impl: Optional[Callable[..., Any]] = None
    contexts: tuple[str, ...] = CONTEXTS

    def for_context(self, context: str) -> Callable[..., Any]:
        if context == CLIENT and self.client_impl is not None:
            return self.client_impl
        return self.impl


class FunctionRegistry:
    """Name-to-function catalog with per-context lookup.

    Example::

        registry = default_registry()
        funcs = registry.require(["get_nonce", "get_timestamp"], "client")
        nonce = funcs["get_nonce"]()
    """

    def __init__(self, functions: Iterable[LibraryFunction]) -> None:
        self._functions: dict[str, LibraryFunction] = {fn.name: fn for fn in functions}

    def names(self, context: Optional[str] = None) -> list[str]:
        """Sorted catalog names, optionally restricted to one context."""
        return sorted(
            name for name, fn in self._functions.items() if context is None or context in fn.contexts
        )

    def get(self, name: str, context: str = SERVER) -> Callable[..., Any]:
        """Return the implementation of *name* for *context*.

        Raises:
            ConfigError: If *name* is unknown or not available in *context*.
        """
        if context not in CONTEXTS:
            raise ConfigError(f"Unknown execution context '{context}'")
        entry = self._functions.get(name)
        if entry is None:
            available = ", ".join(self.names()) or "(none)"
            raise ConfigError(
                f"Library function '{name}' not found. Available functions: {available}"
            )
        if context not in entry.contexts:
            raise ConfigError(
                f"Library function '{name}' is not available in the {context} context"
            )
        return entry.for_context(context)

    def require(self, names: Iterable[str], context: str = SERVER) -> dict[str, Callable[..., Any]]:
        """Return ``{name: implementation}`` for every requested name."""
        functions = {}
        for name in names:
            logger.debug("Loading library function %s for %s", name, context)
            functions[name] = self.get(name, context)
        return functions

    def validate(self, names: Iterable[str]) -> None:
        """Check that every name exists in the catalog.

        Raises:
            ConfigError: Listing all unknown names.
        """
        unknown = [name for name in names if name not in self._functions]
        if unknown:
            raise ConfigError(
                f"Unknown library function(s): {', '.join(unknown)}",
                f"Available functions: {', '.join(self.names())}",
            )


_CATALOG = (
    LibraryFunction(
        "get_signature", oauth1.get_signature, client_impl=oauth1.get_signature_via_server
    ),
    LibraryFunction("hmac_sha1_signature", oauth1.hmac_sha1_signature, contexts=(SERVER,)),
    LibraryFunction("get_nonce", oauth1.get_nonce),
    LibraryFunction("get_timestamp", oauth1.get_timestamp),
    LibraryFunction("parse_token", oauth1.parse_token),
    LibraryFunction("construct_oauth_data", oauth1.construct_oauth_data),
    LibraryFunction("base_string", oauth1.base_string),
    LibraryFunction("base_url", oauth1.base_url),
    LibraryFunction("merge_params", oauth1.merge_params),
    LibraryFunction("parameter_string", oauth1.parameter_string),
    LibraryFunction("decode_query_params", oauth1.decode_query_params),
    LibraryFunction("sort_params", oauth1.sort_params),
    LibraryFunction("signing_key", oauth1.signing_key),
    LibraryFunction("percent_encode", encoding.percent_encode),
    LibraryFunction("to_query_string", encoding.to_query_string),
    LibraryFunction("convert_strings_to_object", encoding.convert_strings_to_object),
    LibraryFunction("clean_mapping", encoding.clean_mapping),
    LibraryFunction("create_form", create_form),
    LibraryFunction("decode_all_uri_components", encoding.decode_all_uri_components),
    LibraryFunction("decode_html_entities", encoding.decode_html_entities),
    LibraryFunction("encode_state", encode_url_state),
)

_default: Optional[FunctionRegistry] = None


def default_registry() -> FunctionRegistry:
    """Return the shared registry holding the built-in catalog."""
    global _default
    if _default is None:
        _default = FunctionRegistry(_CATALOG)
    return _default
