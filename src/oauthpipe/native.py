"""Flows of the built-in (native) providers.

OAuth 2.0 providers are expressed as ordinary stages and run by the
:class:`~oauthpipe.pipeline.PipelineRunner`:

* before the redirect, a single terminal step sends the user agent to the
  authorization endpoint with ``client_id``, ``redirect_uri``,
  ``response_type``, ``scope`` and the URI-encoded state envelope;
* after the redirect, a ``token`` step exchanges the code for an access
  token (skipped for providers that return the token directly) and a
  ``profile`` step fetches the user with a bearer token.

OAuth 1.0a providers (``x``/``twitter``) need signed requests whose query
string depends on a fresh nonce and signature, so they are driven directly
through the :class:`~oauthpipe.executor.RequestExecutor` instead.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Mapping, Optional, Sequence

from oauthpipe import oauth1
from oauthpipe.bridge import encode_url_state
from oauthpipe.errors import ErrorHandler, raise_error
from oauthpipe.exceptions import ConfigError, ProviderError, ResolutionError
from oauthpipe.executor import RequestExecutor, is_retry_exhausted
from oauthpipe.models import (
    CustomProviderConfig,
    FetchRecord,
    ProviderConfig,
    RequestRecord,
    RequestSpec,
    ResponseSpec,
    RetryPolicy,
    StagesConfig,
    StepConfig,
)
from oauthpipe.providers import (
    IMPLICIT_TOKEN,
    SCOPE_OPTIONAL,
    needs_basic_auth,
    provider_url,
    token_body_encoding,
    token_type,
)
from oauthpipe.resolver import MISSING, walk_path
from oauthpipe.values import FunctionValue, LiteralValue, ReferenceValue

logger = logging.getLogger(__name__)

AUTHORIZE_STEP = "authorize"
TOKEN_STEP = "token"
PROFILE_STEP = "profile"

_SINGLE_ATTEMPT = RetryPolicy(max_retries=1)


def check_provider(provider: str, config: ProviderConfig, handler: Optional[ErrorHandler] = None) -> None:
    """Fail early when a native provider is missing required settings.

    Raises:
        ConfigError: Naming the first missing field.
    """
    required = [("client_id", "Client ID"), ("client_secret", "Client Secret"), ("redirect_uri", "Redirect URI")]
    if provider not in SCOPE_OPTIONAL and config.flow_type == "2.0":
        required.append(("scope", "Scope"))
    for field_name, label in required:
        if not getattr(config, field_name):
            raise_error(ConfigError(f"{provider} {label} not found"), handler)


def _basic_auth(config: ProviderConfig) -> str:
    pair = f"{config.client_id}:{config.client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(pair).decode("ascii")


def _bearer(params: Mapping[str, Any], so_far: Mapping[str, Any], ledger: Any, current: Any) -> Optional[str]:
    if TOKEN_STEP in ledger:
        token = walk_path(ledger[TOKEN_STEP].response, ["access_token"])
    else:
        token = params.get("access_token", params.get("code", MISSING))
    if token is MISSING or token is None:
        return None
    return f"Bearer {token}"


def _extra_params(extras: Mapping[str, Any], via_token_step: bool) -> dict[str, Any]:
    """Profile URL extras: strings are literals, lists are paths into the token response."""
    specs: dict[str, Any] = {}
    for key, value in extras.items():
        if isinstance(value, str):
            specs[key] = LiteralValue(value)
        elif via_token_step:
            specs[key] = ReferenceValue((TOKEN_STEP, "response", *value))
        else:
            specs[key] = ReferenceValue(tuple(value))
    return specs


def authorization_step(
    provider: str, config: ProviderConfig, extra_auth_params: Optional[Mapping[str, str]] = None
) -> dict[str, StepConfig]:
    """The single terminal step redirecting to the authorization endpoint."""
    auth_url = provider_url(provider, "auth", config)
    if config.flow_type == "1.0":
        params: dict[str, Any] = dict(extra_auth_params or {})
    else:
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": token_type(provider, config),
        }
        if config.scope:
            params["scope"] = config.scope
        params["state"] = encode_url_state(provider, config.state)
        params.update(config.extra_url_params.get("auth_url", {}))
        params.update(extra_auth_params or {})
        params = {key: value for key, value in params.items() if value}
    return {
        auth_url: StepConfig(name=AUTHORIZE_STEP, request=RequestSpec(method="GET", url_params=params))
    }


def profile_stage(provider: str, config: ProviderConfig) -> dict[str, StepConfig]:
    """After-redirect steps of an OAuth 2.0 provider: token exchange, then profile."""
    steps: dict[str, StepConfig] = {}
    exchange = provider not in IMPLICIT_TOKEN
    if exchange:
        encoding = token_body_encoding(provider)
        headers: dict[str, Any] = {
            "Accept": "application/json",
            "Content-Type": "application/json" if encoding == "json" else "application/x-www-form-urlencoded",
        }
        if needs_basic_auth(provider):
            headers["Authorization"] = _basic_auth(config)
        steps[provider_url(provider, "token", config)] = StepConfig(
            name=TOKEN_STEP,
            request=RequestSpec(
                method="POST",
                headers=headers,
                body={
                    "client_id": config.client_id,
                    "client_secret": config.client_secret,
                    "grant_type": "authorization_code",
                    "redirect_uri": config.redirect_uri,
                    "code": ["code"],
                },
                body_encoding=encoding,
                retries=_SINGLE_ATTEMPT,
            ),
        )

    profile_headers: dict[str, Any] = {"Authorization": FunctionValue(_bearer)}
    profile_headers.update(config.extra_header_params.get("profile_url", {}))
    steps[provider_url(provider, "profile", config)] = StepConfig(
        name=PROFILE_STEP,
        request=RequestSpec(
            method="GET",
            url_params=_extra_params(config.extra_url_params.get("profile_url", {}), exchange),
            headers=profile_headers,
            retries=_SINGLE_ATTEMPT,
        ),
        response=ResponseSpec(to_return={"profile": "all"}),
    )
    return steps


def native_stages(
    provider: str, config: ProviderConfig, extra_auth_params: Optional[Mapping[str, str]] = None
) -> CustomProviderConfig:
    """Express a native provider as a two-stage configuration for the pipeline runner."""
    after = profile_stage(provider, config) if config.flow_type == "2.0" else {}
    return CustomProviderConfig(
        server_endpoint=config.server_endpoint,
        mode="url",
        urls=StagesConfig(
            before_redirect=authorization_step(provider, config, extra_auth_params),
            after_redirect=after,
        ),
    )


# --- OAuth 1.0a ---


async def _json_post(
    executor: RequestExecutor,
    url: str,
    payload: Mapping[str, Any],
    timeout: float,
    handlers: Sequence[Optional[ErrorHandler]] = (),
) -> Any:
    record = FetchRecord(
        request=RequestRecord(method="POST", url=url, headers={"Content-Type": "application/json"}, body=dict(payload))
    )
    return await executor.execute(
        record, json.dumps(payload), timeout=timeout, retries=_SINGLE_ATTEMPT, handlers=handlers
    )


async def request_token(
    provider: str,
    config: ProviderConfig,
    server_url: str,
    executor: RequestExecutor,
    timeout: float = 5.0,
    handler: Optional[ErrorHandler] = None,
) -> str:
    """Client side of the first OAuth 1.0a leg: obtain a request token.

    The HMAC is computed by the server's helper endpoint and the signed
    request is sent through the server's proxy endpoint, so neither needs
    keyed hashing nor cross-origin access in the client.

    Returns:
        The ``oauth_token`` to send the user agent to the provider with.

    Raises:
        ProviderError: If the provider's answer holds no ``oauth_token``.
    """
    if not config.signature_endpoint or not config.request_token_endpoint:
        raise_error(
            ConfigError(
                f"{provider} needs signature_endpoint and request_token_endpoint for OAuth 1.0a"
            ),
            handler,
        )
    url = provider_url(provider, "request_token", config)
    oauth_data = oauth1.construct_oauth_data(
        config.client_id, config.redirect_uri, config.signature_method, config.version
    )
    signature = await oauth1.get_signature_via_server(
        server_url + config.signature_endpoint,
        url,
        "POST",
        oauth_data,
        "",
        config.client_secret,
        config.hashing_function,
        client=executor.client,
    )
    reply = await _json_post(
        executor,
        server_url + config.request_token_endpoint,
        {"method": "POST", "url": url + oauth1.to_url_params(oauth_data, signature), "parseResponseType": "text"},
        timeout,
        (handler,),
    )
    data = reply.get("data") if isinstance(reply, dict) else None
    token = oauth1.parse_token(data, "oauth_token") if isinstance(data, str) else None
    if token is None:
        raise_error(ProviderError(f"Error while getting the {provider} request token", reply), handler)
    return token


async def _signed_request(
    executor: RequestExecutor,
    provider: str,
    config: ProviderConfig,
    url_type: str,
    method: str,
    extra: Mapping[str, Any],
    token_secret: str,
    parse_type: str,
    timeout: float,
) -> Any:
    url = provider_url(provider, url_type, config)
    oauth_data = oauth1.construct_oauth_data(
        config.client_id, config.redirect_uri, config.signature_method, config.version, extra
    )
    signature = oauth1.get_signature(
        url, method, oauth_data, token_secret, config.client_secret, config.hashing_function
    )
    record = FetchRecord(request=RequestRecord(method=method, url=url + oauth1.to_url_params(oauth_data, signature)))
    return await executor.execute(record, None, parse_type=parse_type, timeout=timeout, retries=_SINGLE_ATTEMPT)


async def oauth1_user(
    provider: str,
    config: ProviderConfig,
    oauth_token: str,
    oauth_verifier: str,
    executor: RequestExecutor,
    timeout: float = 5.0,
) -> dict[str, Any]:
    """Server side of OAuth 1.0a: trade the verifier for an access token, then fetch the user.

    Returns:
        ``{"status": ..., "data": ...}``.
    """
    token_text = await _signed_request(
        executor,
        provider,
        config,
        "token",
        "POST",
        {"oauth_token": oauth_token, "oauth_verifier": oauth_verifier},
        "",
        "text",
        timeout,
    )
    if not isinstance(token_text, str):
        return {"status": "error", "data": {"error": "Access token request failed", "data": token_text}}
    access_token = oauth1.parse_token(token_text, "oauth_token")
    token_secret = oauth1.parse_token(token_text, "oauth_token_secret")
    if not access_token or not token_secret:
        return {"status": "error", "data": {"error": "Access token or secret is missing"}}

    user = await _signed_request(
        executor,
        provider,
        config,
        "profile",
        "GET",
        {"include_email": "true", "oauth_token": access_token},
        token_secret,
        "json",
        timeout,
    )
    if not isinstance(user, dict) or is_retry_exhausted(user):
        return {"status": "error", "data": {"error": "Unexpected response from provider server", "data": user}}
    if "error" in user:
        return {"status": "error", "data": {"error": user["error"]}}
    return {"status": "success", "data": user}


def access_token_of(params: Mapping[str, Any]) -> str:
    """Return the code (or implicit access token) from redirect parameters."""
    value = params.get("code") or params.get("access_token")
    if not value:
        raise ResolutionError("No authorization code or access token in the redirect parameters")
    return value
