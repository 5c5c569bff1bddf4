"""Configuration loading.

An :class:`~oauthpipe.models.EngineConfig` can be built directly in Python
(the only way to attach resolver functions and hooks) or loaded from a JSON
or YAML file with :func:`load_config` for purely declarative setups.

Precedence, lowest to highest:

1. Values in the file.
2. Environment variables ``OAUTHPIPE_SERVER_URL`` and ``OAUTHPIPE_TIMEOUT``.
3. Keyword overrides passed to :func:`load_config`.

Provider credentials may be written as source descriptors instead of
literals: ``env:VAR_NAME`` or ``file:/path/to/secret`` (see
:func:`resolve_credential`).
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from oauthpipe.exceptions import ConfigError
from oauthpipe.models import EngineConfig

ENV_SERVER_URL = "OAUTHPIPE_SERVER_URL"
ENV_TIMEOUT = "OAUTHPIPE_TIMEOUT"

_YAML_SUFFIXES = (".yaml", ".yml")


def resolve_credential(source: str) -> str:
    """Resolve a credential from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace

    Any other string is returned unchanged.

    Raises:
        ConfigError: If the variable is unset or the file is unreadable.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set (source: {source})")
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    return source


def _read_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text) if path.suffix.lower() in _YAML_SUFFIXES else json.loads(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    server_url = os.environ.get(ENV_SERVER_URL)
    if server_url:
        overrides["server_url"] = server_url
    timeout = os.environ.get(ENV_TIMEOUT)
    if timeout:
        try:
            overrides["global_timeout"] = float(timeout)
        except ValueError as exc:
            raise ConfigError(f"{ENV_TIMEOUT} must be a number of seconds, got {timeout!r}") from exc
    return overrides


def build_config(data: Mapping[str, Any]) -> EngineConfig:
    """Validate a raw mapping into an :class:`EngineConfig`.

    Raises:
        ConfigError: Wrapping the pydantic validation error.
    """
    try:
        return EngineConfig.model_validate(dict(data))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc


def load_config(path: Path | str, **overrides: Any) -> EngineConfig:
    """Load an :class:`EngineConfig` from a JSON or YAML file.

    Args:
        path: File to read; ``.yaml``/``.yml`` are parsed as YAML, anything
            else as JSON.
        **overrides: Top-level fields that win over the file and the
            environment (``server_url=...``, ``global_error_handler=...``).

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file is missing or malformed, or validation fails.
    """
    data = _read_file(Path(path).expanduser())
    data.update(_env_overrides())
    data.update(overrides)
    return build_config(data)
