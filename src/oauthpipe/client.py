"""Client-side orchestrator.

:class:`OAuthClient` is the half of the engine that lives next to the user
agent.  :meth:`~OAuthClient.handle_login_click` runs the before-redirect
stage of a provider and ends by handing a redirect form to the configured
:class:`~oauthpipe.redirect.Redirector`.  :meth:`~OAuthClient.handle_redirect`
picks the flow up again when the provider sends the user back: it recovers
the state, then lets the server finish the flow.
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Callable, Optional
from urllib.parse import parse_qsl, urlsplit

from oauthpipe.bridge import MemoryStorage, RedirectBridge, StateStorage, decode_url_state, state_envelope
from oauthpipe.encoding import decode_all_uri_components
from oauthpipe.errors import raise_error, report
from oauthpipe.exceptions import BridgeError, ConfigError, OAuthPipeError, ProviderError
from oauthpipe.executor import RequestExecutor, default_retry_on, is_retry_exhausted
from oauthpipe.models import EngineConfig, FetchRecord, Ledger, RequestRecord, RetryContext, RetryPolicy
from oauthpipe.native import check_provider, native_stages, request_token
from oauthpipe.pipeline import BEFORE_REDIRECT, PipelineRunner
from oauthpipe.providers import IMPLICIT_TOKEN
from oauthpipe.redirect import CollectingRedirector, RedirectForm, Redirector
from oauthpipe.registry import CLIENT, FunctionRegistry

logger = logging.getLogger(__name__)

SERVER_ATTEMPTS = 3


def parse_location(location: str) -> tuple[dict[str, str], dict[str, str]]:
    """Split a redirect URL into ``(query, fragment)`` parameter maps.

    HTML character references are decoded first, then each part is
    form-decoded once.
    """
    parts = urlsplit(html.unescape(location))
    return _params(parts.query), _params(parts.fragment)


def _params(text: str) -> dict[str, str]:
    return dict(parse_qsl(text.lstrip("#"), keep_blank_values=True))


def _server_backoff(attempt: int, ctx: RetryContext) -> float:
    return float(2**attempt)


def _log_server_retry(ctx: RetryContext) -> None:
    logger.info("Request to the server failed, retry attempt %d starting", ctx.attempt_number)


class OAuthClient:
    """Start login flows and complete them after the provider redirect.

    Args:
        config: Engine configuration.
        storage: Storage that survives the redirect (in-memory by default).
        redirector: Sends the user agent to the provider (by default the
            forms are only collected, see :class:`CollectingRedirector`).
        executor: Request executor shared by all flows.
        registry: Library function catalog for custom providers.

    Example::

        client = OAuthClient(config, storage=FileStorage(path), redirector=my_redirector)
        await client.handle_login_click("github")
        ...
        outcome = await client.handle_redirect(request_url)
    """

    def __init__(
        self,
        config: EngineConfig,
        storage: Optional[StateStorage] = None,
        redirector: Optional[Redirector] = None,
        executor: Optional[RequestExecutor] = None,
        registry: Optional[FunctionRegistry] = None,
    ) -> None:
        self.config = config
        self.bridge = RedirectBridge(storage or MemoryStorage())
        self.redirector = redirector or CollectingRedirector()
        self.executor = executor or RequestExecutor()
        self.registry = registry
        self.last_ledger: Optional[Ledger] = None

    @property
    def _handler(self) -> Optional[Callable[..., Any]]:
        return self.config.global_error_handler

    # ------------------------------------------------------------------ #
    # Login click
    # ------------------------------------------------------------------ #

    async def handle_login_click(self, provider: str, target: Any = None) -> Optional[RedirectForm]:
        """Run the before-redirect stage of *provider*.

        Args:
            provider: Provider name (case-insensitive).
            target: Opaque attachment point passed to the redirector.

        Returns:
            The redirect form that was (or, for ``test`` steps, would have
            been) submitted.

        Raises:
            ProviderError: If *provider* is not configured.
            OAuthPipeError: Any failure of the stage, after reporting.
        """
        name = provider.lower()
        try:
            native = self.config.provider(name)
            if native is not None:
                return await self._native_login(name, target)
            custom = self.config.custom_provider(name)
            if custom is not None:
                return await self._custom_login(name, target)
            raise_error(
                ProviderError(f"Provider '{provider}' not found in the configuration"), self._handler
            )
        except OAuthPipeError as exc:
            report(exc, self._handler)
            raise

    async def _native_login(self, name: str, target: Any) -> Optional[RedirectForm]:
        native = self.config.providers[name]
        check_provider(name, native, self._handler)
        extra: dict[str, str] = {}
        if native.flow_type == "1.0":
            token = await request_token(
                name, native, self.config.server_url, self.executor, self.config.global_timeout, self._handler
            )
            self.bridge.save_state(state_envelope(name, native.state))
            extra = {"oauth_token": token}
        runner = PipelineRunner(
            name,
            native_stages(name, native, extra),
            context=CLIENT,
            timeout=self.config.global_timeout,
            error_handler=self._handler,
            executor=self.executor,
            registry=self.registry,
            redirector=self.redirector,
        )
        result = await runner.run_stage(BEFORE_REDIRECT, target=target)
        return result.redirect

    async def _custom_login(self, name: str, target: Any) -> Optional[RedirectForm]:
        custom = self.config.custom_providers[name]
        if not custom.urls.before_redirect:
            raise_error(
                ConfigError(f"URLs to fetch before redirecting not found for custom provider: {name}"),
                custom.observability.on_error,
                self._handler,
            )
        user_state = custom.params_list.get("state")
        if callable(user_state):
            user_state = user_state()
        runner = PipelineRunner(
            name,
            custom,
            context=CLIENT,
            timeout=self.config.global_timeout,
            error_handler=self._handler,
            executor=self.executor,
            registry=self.registry,
            bridge=self.bridge,
            redirector=self.redirector,
        )
        result = await runner.run_stage(BEFORE_REDIRECT, user_state=user_state, target=target)
        return result.redirect

    # ------------------------------------------------------------------ #
    # Redirect completion
    # ------------------------------------------------------------------ #

    async def handle_redirect(self, location: str) -> dict[str, Any]:
        """Complete a flow from the URL the provider redirected to.

        Args:
            location: The full redirect URL (query and fragment included).

        Returns:
            ``{"status": "success", "data": {"state": <caller state>,
            "response": <server or flow result>}}``, or an error payload
            when no usable state came back.
        """
        query, fragment = parse_location(location)
        state, problem = self._recover_state(query, fragment)
        if problem is not None:
            return {"status": "error", "data": problem}

        provider = str(state.get("auth") or "").lower()
        if not provider:
            return {"status": "error", "data": {"error": "Invalid provider found", "data": state.get("auth")}}

        try:
            if self.config.provider(provider) is not None:
                response = await self._native_redirect(provider, query, fragment)
            elif self.config.custom_provider(provider) is not None:
                response = await self._custom_redirect(provider, query, fragment)
            else:
                raise_error(ProviderError(f"Provider '{provider}' not found"), self._handler)
        except OAuthPipeError as exc:
            report(exc, self._handler)
            raise
        return {"status": "success", "data": {"state": state.get("userState"), "response": response}}

    def _recover_state(
        self, query: dict[str, str], fragment: dict[str, str]
    ) -> tuple[dict[str, Any], Optional[dict[str, Any]]]:
        """Return ``(state, None)`` or ``({}, error payload)``.

        Local storage wins over the URL; the stored copy is consumed.
        """
        try:
            stored = self.bridge.pop_state()
            if stored is not None:
                return stored, None
            raw = query.get("state") or fragment.get("state")
            if not raw:
                return {}, {"error": "State not found", "data": None}
            return decode_url_state(raw), None
        except BridgeError as exc:
            return {}, {"error": "Error getting state", "data": str(exc)}

    def _server_url(self, endpoint: str) -> str:
        if not self.config.server_url or not endpoint:
            raise_error(ConfigError("Server URL not found"), self._handler)
        return self.config.server_url + endpoint

    async def _post_to_server(self, url: str, payload: dict[str, Any], retries: RetryPolicy) -> Any:
        record = FetchRecord(
            request=RequestRecord(
                method="POST", url=url, headers={"Content-Type": "application/json"}, body=payload
            )
        )
        return await self.executor.execute(
            record,
            json.dumps(payload),
            timeout=self.config.global_timeout,
            retries=retries,
            handlers=(self._handler,),
        )

    async def _native_redirect(self, provider: str, query: dict[str, str], fragment: dict[str, str]) -> Any:
        native = self.config.providers[provider]
        url = self._server_url(native.server_endpoint)
        code = fragment.get("access_token") if provider in IMPLICIT_TOKEN else query.get("code")
        if code:
            extra = {"code": code}
        elif query.get("oauth_token") and query.get("oauth_verifier"):
            extra = {"oauth_token": query["oauth_token"], "oauth_verifier": query["oauth_verifier"]}
        else:
            missing = "oauth_token or oauth_verifier" if native.flow_type == "1.0" else "Code"
            return {"status": "error", "data": {"error": f"{missing} not found", "data": query or fragment}}

        reply = await self._post_to_server(url, {"provider": provider, **extra}, RetryPolicy(max_retries=1))
        if is_retry_exhausted(reply):
            return {"status": "error", "data": {"error": "Error response from server", "data": reply}}
        if not isinstance(reply, dict) or "status" not in reply:
            return {"status": "error", "data": {"error": "Invalid response type sent by the server", "data": reply}}
        return reply

    async def _custom_redirect(self, provider: str, query: dict[str, str], fragment: dict[str, str]) -> Any:
        custom = self.config.custom_providers[provider]
        url = self._server_url(custom.server_endpoint)
        ledger, results = self.bridge.restore()
        all_url_params = {**decode_all_uri_components(query), **decode_all_uri_components(fragment)}
        logger.debug("Redirect parameters for %s: %s", provider, sorted(all_url_params))

        retries = RetryPolicy(
            max_retries=SERVER_ATTEMPTS,
            backoff=_server_backoff,
            retry_on=default_retry_on,
            on_retry=_log_server_retry,
        )
        reply = await self._post_to_server(
            url,
            {"provider": provider, "allUrlParams": all_url_params, "previousFetchData": ledger.to_wire()},
            retries,
        )
        if not isinstance(reply, dict) or not set(reply) <= {"status", "data"}:
            reply = {"status": "error", "data": "Invalid response type sent by the server"}
        if reply.get("status") != "success":
            raise_error(
                ProviderError("Error from the server, unable to get the user info!", reply.get("data")),
                custom.observability.on_error,
                self._handler,
            )
        data = reply.get("data") or {}
        ledger.merge(data.get("previousFetchData") or {})
        results.update(data.get("toReturnObject") or {})
        self.last_ledger = ledger
        return {"status": "success", "data": results}

