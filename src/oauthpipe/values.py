"""Value specifications for step parameters.

A step's ``url_params``, ``headers`` and ``body`` map each key to one of four
value kinds.  Configuration authors write them in their natural Python form
and :func:`to_value_spec` turns each raw value into a tagged variant once,
when the configuration is validated:

===================================  ====================
Raw config value                     Variant
===================================  ====================
``"text"``                           :class:`LiteralValue`
``["step", "response", "token"]``    :class:`ReferenceValue`
``lambda params, so_far, ledger, current: ...``  :class:`FunctionValue`
``{"functions": [...], "generate": fn}``         :class:`LibraryValue`
===================================  ====================

``"this"`` is accepted as an alias of ``"functions"`` for library calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Union

from oauthpipe.exceptions import ConfigError


@dataclass(frozen=True)
class LiteralValue:
    """A static string passed through unchanged."""

    value: str


@dataclass(frozen=True)
class ReferenceValue:
    """A path into the ledger: ``(step name, "request" | "response", *keys)``."""

    path: tuple[str, ...]


@dataclass(frozen=True)
class FunctionValue:
    """A resolver called with ``(params_list, resolved_so_far, ledger, current)``."""

    func: Callable[..., Any]


@dataclass(frozen=True)
class LibraryValue:
    """A generator called with the named library functions injected.

    ``generate`` receives ``(params_list, functions, resolved_so_far, ledger,
    current)`` where ``functions`` maps each requested name to its callable.
    """

    functions: tuple[str, ...]
    generate: Callable[..., Any]


ValueSpec = Union[LiteralValue, ReferenceValue, FunctionValue, LibraryValue]

_VARIANTS = (LiteralValue, ReferenceValue, FunctionValue, LibraryValue)


def to_value_spec(raw: Any, key: str = "?") -> ValueSpec:
    """Coerce one raw configuration value into its tagged variant.

    Args:
        raw: The value as written in the configuration.
        key: Parameter name, used in error messages.

    Returns:
        The matching :data:`ValueSpec` variant.

    Raises:
        ConfigError: If *raw* matches none of the four kinds, or a library
            call names a function missing from the registry catalog.
    """
    if isinstance(raw, _VARIANTS):
        return raw
    if isinstance(raw, str):
        return LiteralValue(raw)
    if isinstance(raw, (list, tuple)):
        if not all(isinstance(segment, str) for segment in raw):
            raise ConfigError(f"Reference for '{key}' must be a list of strings, got {raw!r}")
        return ReferenceValue(tuple(raw))
    if isinstance(raw, Mapping):
        return _library_value(raw, key)
    if callable(raw):
        return FunctionValue(raw)
    raise ConfigError(
        f"Unsupported value for '{key}': {raw!r}",
        "Use a string, a reference list, a function or a {'functions', 'generate'} mapping",
    )


def _library_value(raw: Mapping[str, Any], key: str) -> LibraryValue:
    from oauthpipe.registry import default_registry

    names = raw.get("functions", raw.get("this"))
    generate = raw.get("generate")
    if not isinstance(names, (list, tuple)) or not callable(generate):
        raise ConfigError(
            f"Library call for '{key}' needs a 'functions' list and a callable 'generate'"
        )
    default_registry().validate(names)
    return LibraryValue(tuple(names), generate)


def to_value_specs(raw: Mapping[str, Any] | None) -> dict[str, ValueSpec]:
    """Coerce a whole parameter mapping, preserving declaration order."""
    return {key: to_value_spec(value, key) for key, value in (raw or {}).items()}
