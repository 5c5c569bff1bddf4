"""Value Resolver -- turns a step's parameter specs into a flat string map.

Each key of ``url_params``, ``headers`` or ``body`` holds one of the four
:mod:`oauthpipe.values` variants.  :class:`ValueResolver` resolves them in
declaration order, so a function or library generator can read the keys
resolved before it, and finally flattens the result: structured values are
dropped and every remaining scalar becomes a string.

References are hard failures when they do not resolve.  A misspelt step
name, a second segment other than ``request``/``response`` or a missing key
raises :class:`~oauthpipe.exceptions.ResolutionError` rather than producing
an empty value.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Mapping
from typing import Any, Optional, Sequence

from oauthpipe.exceptions import OAuthPipeError, ResolutionError
from oauthpipe.models import FetchRecord, Ledger
from oauthpipe.registry import SERVER, FunctionRegistry, default_registry
from oauthpipe.values import FunctionValue, LibraryValue, LiteralValue, ReferenceValue, ValueSpec

logger = logging.getLogger(__name__)

RECORD_HALVES = ("request", "response")


class _Missing:
    """Marker for "no value at this path"."""

    _instance: Optional[_Missing] = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def walk_path(node: Any, path: Sequence[str]) -> Any:
    """Follow *path* through nested mappings (and lists, by numeric segment).

    Returns:
        The value found, or :data:`MISSING` when a segment is absent or the
        walk reaches a node that cannot be indexed (a string, a number...).
    """
    for segment in path:
        if isinstance(node, Mapping):
            if segment not in node:
                return MISSING
            node = node[segment]
        elif isinstance(node, list) and segment.isdigit() and int(segment) < len(node):
            node = node[int(segment)]
        else:
            return MISSING
    return node


def stringify(value: Any) -> str:
    """Flatten one resolved scalar to its wire string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, Mapping, list, tuple)):
        return len(value) == 0
    return False


def flatten(values: Mapping[str, Any]) -> dict[str, str]:
    """Drop structured values and stringify the rest."""
    return {
        key: stringify(value)
        for key, value in values.items()
        if not isinstance(value, (Mapping, list, tuple))
    }


class ValueResolver:
    """Resolve parameter maps against one flow's params list and ledger.

    Args:
        params_list: Static values of the provider, passed to every
            function and library generator.
        ledger: Records of the steps completed so far.
        context: ``"client"`` or ``"server"``; selects which library
            function implementations generators receive.
        registry: Library catalog (defaults to the built-in one).
        overrides: Fresh parameters returned by the provider's redirect.
            References whose first segment is not a ledger entry are walked
            against this map instead.

    Example::

        resolver = ValueResolver(params_list, ledger)
        headers = await resolver.resolve(step.request.headers, record)
    """

    def __init__(
        self,
        params_list: Mapping[str, Any],
        ledger: Ledger,
        context: str = SERVER,
        registry: Optional[FunctionRegistry] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.params_list = params_list
        self.ledger = ledger
        self.context = context
        self.registry = registry or default_registry()
        self.overrides = overrides

    async def resolve(
        self, specs: Mapping[str, ValueSpec], current: Optional[FetchRecord] = None
    ) -> dict[str, str]:
        """Resolve every key of *specs* in order and flatten the result.

        Args:
            specs: Parameter specs as stored on the step configuration.
            current: The record of the step being built (its request half
                grows as url params, headers and body resolve).

        Returns:
            The flat ``{key: string}`` map.

        Raises:
            ResolutionError: If any key cannot be resolved.
            ConfigError: If a library call names a function unavailable in
                this context.
        """
        current = current or FetchRecord()
        resolved: dict[str, Any] = {}
        for key, spec in specs.items():
            resolved[key] = await self.resolve_value(key, spec, resolved, current)
        flat = flatten(resolved)
        dropped = set(resolved) - set(flat)
        if dropped:
            logger.debug("Dropped structured values for %s", ", ".join(sorted(dropped)))
        return flat

    async def resolve_value(
        self, key: str, spec: ValueSpec, so_far: Mapping[str, Any], current: FetchRecord
    ) -> Any:
        """Resolve one value spec (unflattened)."""
        if isinstance(spec, LiteralValue):
            return spec.value
        if isinstance(spec, ReferenceValue):
            return self.resolve_reference(key, spec.path)
        if isinstance(spec, FunctionValue):
            return await self._call(key, "function", spec.func, self.params_list, dict(so_far), self.ledger, current)
        if isinstance(spec, LibraryValue):
            functions = self.registry.require(spec.functions, self.context)
            return await self._call(
                key, "library generator", spec.generate, self.params_list, functions, dict(so_far), self.ledger, current
            )
        raise ResolutionError(f"Unsupported value spec for '{key}': {spec!r}")

    def resolve_reference(self, key: str, path: Sequence[str]) -> Any:
        """Walk a reference path through the ledger (or the override map).

        Raises:
            ResolutionError: If the path is malformed or any segment is absent.
        """
        if self.overrides is not None and (not path or path[0] not in self.ledger):
            value = walk_path(self.overrides, path)
            if value is MISSING or value is None:
                raise ResolutionError(
                    f"Reference {list(path)!r} for '{key}' not found in the redirect parameters"
                )
            return value

        if len(path) < 2:
            raise ResolutionError(
                f"Reference {list(path)!r} for '{key}' is too short",
                "A reference needs at least a step name and 'request' or 'response'",
            )
        name, half = path[0], path[1]
        if name not in self.ledger:
            known = ", ".join(self.ledger) or "(none)"
            raise ResolutionError(
                f"Reference {list(path)!r} for '{key}' names unknown step '{name}'",
                f"Steps available at this point: {known}",
            )
        if half not in RECORD_HALVES:
            raise ResolutionError(
                f"Reference {list(path)!r} for '{key}': second segment must be 'request' or 'response', got '{half}'"
            )
        value = walk_path(self.ledger[name].half(half), path[2:])
        if value is MISSING or value is None:
            raise ResolutionError(f"Reference {list(path)!r} for '{key}' did not resolve")
        return value

    async def _call(self, key: str, source: str, func: Any, *args: Any) -> Any:
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                result = await result
        except OAuthPipeError:
            raise
        except Exception as exc:
            raise ResolutionError(
                f"The {source} for '{key}' raised {type(exc).__name__}: {exc}"
            ) from exc
        if _is_empty(result):
            raise ResolutionError(f"The {source} for '{key}' returned an empty value")
        return result
