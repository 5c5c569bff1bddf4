"""Canonical models shared across all oauthpipe modules.

The models fall into two groups:

**Configuration models** -- constructed once at startup and read-only
afterwards (every model is frozen): :class:`RetryPolicy`,
:class:`RequestSpec`, :class:`ResponseSpec`, :class:`StepConfig`,
:class:`StagesConfig`, :class:`Observability`,
:class:`CustomProviderConfig`, :class:`ProviderConfig` and the top-level
:class:`EngineConfig`.

**Execution records** -- produced while a pipeline runs:
:class:`RequestRecord` and :class:`FetchRecord` (one per completed step),
the :class:`Ledger` that accumulates them, and the ephemeral
:class:`RetryContext` handed to retry hooks.

Configuration values that may be callables (resolvers, validators, hooks)
are stored as-is; pydantic only checks that they are callable.  Parameter
maps are coerced into :mod:`oauthpipe.values` variants at validation time so
malformed descriptors fail when the configuration is built, not mid-flow.
"""

from __future__ import annotations

import inspect
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from oauthpipe.exceptions import ConfigError
from oauthpipe.values import ValueSpec, to_value_specs

Hook = Callable[..., Any]

_CONFIG = ConfigDict(frozen=True, arbitrary_types_allowed=True, extra="forbid")


# --- Execution records ---


class RequestRecord(BaseModel):
    """The outgoing request of one step, as actually sent.

    Serialised with the wire key ``urlParams`` (see :meth:`FetchRecord.to_wire`).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    method: str = ""
    url: str = ""
    url_params: dict[str, Any] = Field(default_factory=dict, alias="urlParams")
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Any = Field(default_factory=dict)


class FetchRecord(BaseModel):
    """Result of executing one step: the request sent and the parsed response.

    Records are immutable; the pipeline builds a new one once the response
    is known instead of mutating the pending one.

    Attributes:
        request: The resolved outgoing request.
        response: Parsed response body (mapping, list or text), the
            executor's terminal error payload, or ``"Error"``.
    """

    model_config = ConfigDict(frozen=True)

    request: RequestRecord = Field(default_factory=RequestRecord)
    response: Any = Field(default_factory=dict)

    def half(self, name: str) -> Any:
        """Return the wire form of ``"request"`` or ``"response"``."""
        if name == "request":
            return self.request.model_dump(by_alias=True)
        if name == "response":
            return self.response
        raise KeyError(name)

    def to_wire(self) -> dict[str, Any]:
        return {"request": self.request.model_dump(by_alias=True), "response": self.response}

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> FetchRecord:
        return cls(
            request=RequestRecord.model_validate(data.get("request") or {}),
            response=data.get("response", {}),
        )


class Ledger(Mapping):
    """Step name to :class:`FetchRecord`, grown one entry per completed step.

    The ledger never deletes entries.  It is the only channel through which
    later steps see earlier results and the only execution state carried
    across the redirect.

    Example::

        ledger = Ledger()
        ledger.append("token", record)
        ledger["token"].response["access_token"]
    """

    def __init__(self, records: Optional[Mapping[str, FetchRecord]] = None) -> None:
        self._records: dict[str, FetchRecord] = dict(records or {})

    def __getitem__(self, name: str) -> FetchRecord:
        return self._records[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"Ledger({list(self._records)!r})"

    def append(self, name: str, record: FetchRecord) -> None:
        """Add the record of a just-completed step.

        Raises:
            ConfigError: If *name* is already present -- step names must be
                unique across both stages of a provider.
        """
        if name in self._records:
            raise ConfigError(
                f"Step name '{name}' is already in the ledger",
                "Step names must be unique across the before- and after-redirect stages",
            )
        self._records[name] = record

    def merge(self, other: Mapping[str, Any]) -> None:
        """Layer entries from *other* (records or their wire form) over this ledger."""
        for name, record in other.items():
            if not isinstance(record, FetchRecord):
                record = FetchRecord.from_wire(record)
            self._records[name] = record

    def copy(self) -> Ledger:
        return Ledger(self._records)

    def to_wire(self) -> dict[str, Any]:
        return {name: record.to_wire() for name, record in self._records.items()}

    @classmethod
    def from_wire(cls, data: Optional[Mapping[str, Any]]) -> Ledger:
        ledger = cls()
        ledger.merge(data or {})
        return ledger


@dataclass
class RetryContext:
    """Snapshot handed to backoff, retry and ``on_retry`` hooks.

    Rebuilt for every failed attempt; never persisted.

    Attributes:
        attempt_number: Attempts made so far (1 after the first failure).
        error: The failure of the latest attempt.
        total_elapsed_time: Seconds since the first attempt started.
        last_attempt_timestamp: ``time.time()`` when the previous wait ended.
        retry_delay: Delay (seconds) used before the latest attempt.
        max_retries: Configured attempt cap.
        ledger: The ledger as of this step.
    """

    attempt_number: int
    error: BaseException
    total_elapsed_time: float
    last_attempt_timestamp: float
    retry_delay: float
    max_retries: int
    ledger: Ledger


# --- Step configuration ---


def _accepts_args(func: Callable[..., Any]) -> int:
    """Number of positional arguments *func* accepts (large for ``*args``)."""
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return 2
    count = 0
    for param in signature.parameters.values():
        if param.kind == param.VAR_POSITIONAL:
            return 1 << 8
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            count += 1
    return count


def normalize_validator(func: Callable[..., Any]) -> Callable[..., Any]:
    """Adapt a validator to the ``(ledger, record)`` calling convention.

    Validators written against the ledger only are wrapped so both forms
    are accepted.
    """
    arity = _accepts_args(func)
    if arity >= 2:
        return func
    if arity == 1:
        return lambda ledger, record: func(ledger)
    return lambda ledger, record: func()


class RetryPolicy(BaseModel):
    """Per-request retry settings; unset fields fall back to defaults.

    Attributes:
        max_retries: Total attempt cap (default 2).
        backoff: ``(attempt, ctx) -> seconds`` (default: the step timeout).
        retry_on: ``(error, status_code) -> bool`` (default: 429 and 503).
        on_retry: ``(ctx) -> None`` fired before each wait.
    """

    model_config = _CONFIG

    max_retries: Optional[int] = Field(default=None, ge=1)
    backoff: Optional[Hook] = None
    retry_on: Optional[Hook] = None
    on_retry: Optional[Hook] = None


class RequestSpec(BaseModel):
    """How to build the outgoing request of a step."""

    model_config = _CONFIG

    method: str = "GET"
    percent_encode: bool = False
    url_params: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Union[str, dict[str, Any], None] = None
    body_encoding: Literal["json", "url", "text"] = "json"
    timeout: Optional[float] = Field(default=None, gt=0)
    on_error: Optional[Hook] = None
    retries: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    @field_validator("url_params", "headers")
    @classmethod
    def _coerce_params(cls, value: dict[str, Any]) -> dict[str, ValueSpec]:
        return to_value_specs(value)

    @field_validator("body")
    @classmethod
    def _coerce_body(cls, value: Union[str, dict[str, Any], None]) -> Union[str, dict[str, ValueSpec], None]:
        if isinstance(value, dict):
            return to_value_specs(value)
        return value


class ResponseSpec(BaseModel):
    """How to parse, validate and project the response of a step.

    ``to_return`` maps an output key to either ``"all"`` (the whole
    response) or a list of keys walked into the response.
    """

    model_config = ConfigDict(
        frozen=True, arbitrary_types_allowed=True, extra="forbid", populate_by_name=True
    )

    parse_type: Literal["json", "text"] = "json"
    validate_: list[Hook] = Field(default_factory=list, alias="validate")
    to_return: dict[str, Union[Literal["all"], list[str]]] = Field(default_factory=dict)
    on_error: Optional[Hook] = None

    @field_validator("validate_")
    @classmethod
    def _normalize_validators(cls, value: list[Hook]) -> list[Hook]:
        return [normalize_validator(func) for func in value]

    @property
    def validators(self) -> list[Hook]:
        return self.validate_


class StepConfig(BaseModel):
    """One URL's full request/response descriptor.

    Attributes:
        name: Ledger key for this step (defaults to the URL).
        request: Request shape.
        response: Response shape.
        proxy: URL of a proxy endpoint to route the request through.
        before_next_step: ``(ledger, record)`` hook run after the step
            completes (or right before the redirect on a terminal step).
        test: On the terminal before-redirect step, build the redirect
            form without submitting it.
    """

    model_config = _CONFIG

    name: Optional[str] = None
    request: RequestSpec = Field(default_factory=RequestSpec)
    response: ResponseSpec = Field(default_factory=ResponseSpec)
    proxy: Optional[str] = None
    before_next_step: Optional[Hook] = None
    test: bool = False

    def step_name(self, url: str) -> str:
        return self.name or url


Stage = dict[str, StepConfig]


class StagesConfig(BaseModel):
    """The two stages of a custom provider, keyed by URL in execution order."""

    model_config = _CONFIG

    before_redirect: Stage = Field(default_factory=dict)
    after_redirect: Stage = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unique_step_names(self) -> StagesConfig:
        seen: set[str] = set()
        for stage in (self.before_redirect, self.after_redirect):
            for url, step in stage.items():
                name = step.step_name(url)
                if name in seen:
                    raise ValueError(f"Duplicate step name '{name}' across stages")
                seen.add(name)
        return self

    def stage(self, name: str) -> Stage:
        if name == "before_redirect":
            return self.before_redirect
        if name == "after_redirect":
            return self.after_redirect
        raise ConfigError(f"Unknown stage '{name}'")


class Observability(BaseModel):
    """Stage-wide hooks.

    ``on_request_start`` / ``on_request_end`` receive the step's
    :class:`FetchRecord`; ``on_error`` is the stage-level error handler;
    ``on_retry`` is the fallback for steps without their own.
    """

    model_config = _CONFIG

    on_request_start: Optional[Hook] = None
    on_request_end: Optional[Hook] = None
    on_error: Optional[Hook] = None
    on_retry: Optional[Hook] = None


class CustomProviderConfig(BaseModel):
    """A fully configuration-defined provider.

    Attributes:
        params_list: Static values visible to every resolver of the flow
            (client id, secret, redirect URI, scope, ``state``...).
        server_endpoint: Path on ``server_url`` that runs the
            after-redirect stage.
        step_logging: Trace every step at INFO level.
        observability: Stage-wide hooks.
        mode: ``"url"`` when the provider echoes ``state`` back, ``"ls"``
            to keep the state in local storage across the redirect.
        urls: The two stages.
    """

    model_config = _CONFIG

    params_list: dict[str, Any] = Field(default_factory=dict)
    server_endpoint: str
    step_logging: bool = False
    observability: Observability = Field(default_factory=Observability)
    mode: Literal["url", "ls"] = "url"
    urls: StagesConfig = Field(default_factory=StagesConfig)


class ProviderConfig(BaseModel):
    """A built-in (native) provider.

    URL fields override the built-in tables in :mod:`oauthpipe.providers`.
    ``client_id`` and ``client_secret`` accept the credential source
    descriptors ``env:VAR`` and ``file:/path``.
    """

    model_config = _CONFIG

    client_id: str
    client_secret: str
    redirect_uri: str
    server_endpoint: str = ""
    scope: Optional[str] = None
    tenant: Optional[str] = None
    response_type: Optional[Literal["token", "code"]] = None
    state: Optional[str] = None
    flow_type: Literal["1.0", "2.0"] = "2.0"
    request_token_endpoint: Optional[str] = None
    signature_endpoint: Optional[str] = None
    request_token_url: Optional[str] = None
    signature_method: str = "HMAC-SHA1"
    version: str = "1.0"
    auth_url: Optional[str] = None
    token_url: Optional[str] = None
    profile_url: Optional[str] = None
    extra_url_params: dict[str, dict[str, Union[str, list[str]]]] = Field(default_factory=dict)
    extra_header_params: dict[str, dict[str, str]] = Field(default_factory=dict)
    hashing_function: Optional[Hook] = None

    @field_validator("client_id", "client_secret")
    @classmethod
    def _resolve_source(cls, value: str) -> str:
        if value.startswith(("env:", "file:")):
            from oauthpipe.config import resolve_credential

            return resolve_credential(value)
        return value


class EngineConfig(BaseModel):
    """Top-level configuration, constructed once and passed explicitly.

    Attributes:
        server_url: Base URL of the server half (endpoints are appended).
        global_timeout: Default per-attempt timeout in seconds.
        global_error_handler: Backstop ``(error, details)`` handler.
        providers: Built-in providers by lowercase name.
        custom_providers: Custom providers by lowercase name.
    """

    model_config = _CONFIG

    server_url: str = ""
    global_timeout: float = Field(default=5.0, gt=0)
    global_error_handler: Optional[Hook] = None
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    custom_providers: dict[str, CustomProviderConfig] = Field(default_factory=dict)

    @field_validator("providers", "custom_providers")
    @classmethod
    def _lowercase_names(cls, value: dict[str, Any]) -> dict[str, Any]:
        return {name.lower(): provider for name, provider in value.items()}

    @model_validator(mode="after")
    def _has_provider(self) -> EngineConfig:
        if not self.providers and not self.custom_providers:
            raise ValueError(
                "No provider specified: add one under 'providers' or 'custom_providers'"
            )
        return self

    def provider(self, name: str) -> Optional[ProviderConfig]:
        return self.providers.get(name.lower())

    def custom_provider(self, name: str) -> Optional[CustomProviderConfig]:
        return self.custom_providers.get(name.lower())
