"""Server-side orchestrator.

:class:`OAuthServer` exposes the three operations a web application mounts
on its own routes (this package does not bind to any framework):

* :meth:`~OAuthServer.get_user` finishes a flow: the code-for-token
  exchange and profile fetch of native providers, or the after-redirect
  stage of a custom provider;
* :meth:`~OAuthServer.helper_function` runs one library function for the
  client (e.g. computing an OAuth 1.0a signature with the secret kept
  server-side);
* :meth:`~OAuthServer.use_proxy` performs a request on the client's behalf.

Each takes the decoded JSON request body and returns a JSON-serialisable
``{"status": ..., "data": ...}`` mapping.
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Callable, Mapping, Optional

from oauthpipe.errors import raise_error, report
from oauthpipe.exceptions import ConfigError, OAuthPipeError, ProviderError
from oauthpipe.executor import RequestExecutor, is_retry_exhausted
from oauthpipe.models import EngineConfig, FetchRecord, Ledger, RequestRecord, RetryPolicy
from oauthpipe.native import PROFILE_STEP, access_token_of, native_stages, oauth1_user
from oauthpipe.pipeline import AFTER_REDIRECT, PipelineRunner
from oauthpipe.providers import IMPLICIT_TOKEN
from oauthpipe.registry import SERVER, FunctionRegistry, default_registry

logger = logging.getLogger(__name__)


def _error(message: str, data: Any = None) -> dict[str, Any]:
    return {"status": "error", "data": {"error": message, "data": data}}


class OAuthServer:
    """Complete flows and serve client helpers.

    Args:
        config: Engine configuration.
        executor: Request executor shared by all flows.
        registry: Library function catalog (the built-in one by default).

    Example::

        server = OAuthServer(config)
        # inside a POST route
        return await server.get_user(await request.json())
    """

    def __init__(
        self,
        config: EngineConfig,
        executor: Optional[RequestExecutor] = None,
        registry: Optional[FunctionRegistry] = None,
    ) -> None:
        self.config = config
        self.executor = executor or RequestExecutor()
        self.registry = registry or default_registry()

    @property
    def _handler(self) -> Optional[Callable[..., Any]]:
        return self.config.global_error_handler

    def _runner(self, provider: str, stages: Any) -> PipelineRunner:
        return PipelineRunner(
            provider,
            stages,
            context=SERVER,
            timeout=self.config.global_timeout,
            error_handler=self._handler,
            executor=self.executor,
            registry=self.registry,
        )

    # ------------------------------------------------------------------ #
    # get_user
    # ------------------------------------------------------------------ #

    async def get_user(self, body: Mapping[str, Any]) -> dict[str, Any]:
        """Finish the flow described by *body*.

        Args:
            body: ``{"provider", "code"}`` for OAuth 2.0 natives (``code``
                holds the access token for implicit providers),
                ``{"provider", "oauth_token", "oauth_verifier"}`` for OAuth
                1.0a, ``{"provider", "allUrlParams", "previousFetchData"}``
                for custom providers.

        Returns:
            The user profile (native) or ``{"previousFetchData",
            "toReturnObject"}`` (custom) under ``data``.

        Raises:
            OAuthPipeError: Failures of a custom provider's stage, after
                they were reported.
        """
        provider = str(body.get("provider") or "").lower()
        if not provider:
            return _error("Provider not found", f"provider: {body.get('provider')}")

        if self.config.provider(provider) is not None:
            return await self._native_user(provider, body)
        if self.config.custom_provider(provider) is not None:
            try:
                return await self._custom_user(provider, body)
            except OAuthPipeError as exc:
                report(exc, self._handler)
                raise

        report(ProviderError(f"No provider named '{provider}' is configured"), self._handler)
        return {"status": "error", "data": {"error": "No Provider Specified"}}

    async def _native_user(self, provider: str, body: Mapping[str, Any]) -> dict[str, Any]:
        native = self.config.providers[provider]
        if native.flow_type == "1.0":
            token, verifier = body.get("oauth_token"), body.get("oauth_verifier")
            if not (token and verifier):
                return _error("OAuth Token or OAuth Verifier not found")
            return await oauth1_user(provider, native, token, verifier, self.executor, self.config.global_timeout)

        implicit = provider in IMPLICIT_TOKEN
        try:
            code = access_token_of(body)
        except OAuthPipeError:
            return _error("Access token not found" if implicit else "Code not found")

        overrides = {"access_token": code} if implicit else {"code": code}
        try:
            result = await self._runner(provider, native_stages(provider, native)).run_stage(
                AFTER_REDIRECT, overrides=overrides
            )
        except OAuthPipeError as exc:
            report(exc, self._handler)
            return _error("Error from provider", str(exc))
        if not result.ok:
            return _error("Error from provider", result.ledger[result.exhausted_step].response)
        logger.info("Fetched %s profile via %s", provider, PROFILE_STEP)
        return {"status": "success", "data": result.results.get("profile")}

    async def _custom_user(self, provider: str, body: Mapping[str, Any]) -> dict[str, Any]:
        custom = self.config.custom_providers[provider]
        all_url_params = body.get("allUrlParams")
        previous = body.get("previousFetchData")
        if all_url_params is None or previous is None:
            logger.error("Missing the url params or the data from previous fetches for %s", provider)
            return _error("Invalid Params passed")
        if not custom.urls.after_redirect:
            raise_error(
                ConfigError(f"URLs to fetch after the redirect not found for custom provider: {provider}"),
                custom.observability.on_error,
                self._handler,
            )

        result = await self._runner(provider, custom).run_stage(
            AFTER_REDIRECT, ledger=Ledger.from_wire(previous), overrides=dict(all_url_params)
        )
        return {
            "status": "success" if result.ok else "error",
            "data": {"previousFetchData": result.ledger.to_wire(), "toReturnObject": result.results},
        }

    # ------------------------------------------------------------------ #
    # helper_function / use_proxy
    # ------------------------------------------------------------------ #

    async def helper_function(self, body: Mapping[str, Any]) -> dict[str, Any]:
        """Run ``body["functionName"]`` with ``body["functionParams"]`` as positional args.

        Raises:
            ConfigError: If the function is not in the server catalog.
        """
        name = body.get("functionName")
        params = body.get("functionParams") or []
        func = self.registry.get(str(name), SERVER)
        logger.debug("Helper function %s called with %d params", name, len(params))
        result = func(*params)
        if inspect.isawaitable(result):
            result = await result
        return {"data": result}

    async def use_proxy(self, body: Mapping[str, Any]) -> dict[str, Any]:
        """Perform ``{url, method, headers, body, parseResponseType}`` and return the parsed response."""
        url = body.get("url")
        if not url:
            raise_error(ConfigError("Invalid Parameters Given", "The proxy needs at least a url"), self._handler)
        method = str(body.get("method") or "GET").upper()
        headers = dict(body.get("headers") or {})
        payload = body.get("body") or None
        encoded = payload if payload is None or isinstance(payload, str) else json.dumps(payload)
        record = FetchRecord(request=RequestRecord(method=method, url=url, headers=headers, body=payload or {}))
        try:
            data = await self.executor.execute(
                record,
                encoded,
                parse_type=body.get("parseResponseType") or "json",
                timeout=self.config.global_timeout,
                retries=RetryPolicy(max_retries=1),
            )
        except OAuthPipeError as exc:
            logger.warning("Error using proxy for %s %s: %s", method, url, exc)
            return {"status": "error", "data": str(exc)}
        if is_retry_exhausted(data):
            logger.warning("Proxy request %s %s ran out of retries", method, url)
            return {"status": "error", "data": data}
        return {"status": "success", "data": data}
