"""Pipeline Runner -- executes one stage of a provider's steps in order.

For every step of a stage the runner:

1. resolves ``url_params``, ``headers`` and ``body`` with a
   :class:`~oauthpipe.resolver.ValueResolver` (a raw string body is sent
   as-is);
2. appends the URL parameters to the step URL and encodes the body;
3. fires ``on_request_start``, runs the
   :class:`~oauthpipe.executor.RequestExecutor`, fires ``on_request_end``;
4. projects ``to_return`` paths from the response into the result
   accumulator;
5. calls the step's ``before_next_step(ledger, record)`` hook;
6. appends the step's :class:`~oauthpipe.models.FetchRecord` to the ledger.

The last step of a before-redirect stage run in the client context makes no
request.  It becomes a :class:`~oauthpipe.redirect.RedirectForm`: the ledger
and results are saved through the :class:`~oauthpipe.bridge.RedirectBridge`
and the form is handed to the :class:`~oauthpipe.redirect.Redirector`
(unless the step is marked ``test``).
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

from oauthpipe.bridge import RedirectBridge, state_envelope
from oauthpipe.encoding import ERROR_MARKER, build_url, encode_body
from oauthpipe.errors import ErrorHandler, raise_error
from oauthpipe.exceptions import ConfigError, OAuthPipeError, ResolutionError
from oauthpipe.executor import RequestExecutor, is_retry_exhausted
from oauthpipe.log import StepLog
from oauthpipe.models import CustomProviderConfig, FetchRecord, Ledger, RequestRecord, StepConfig
from oauthpipe.redirect import RedirectForm, Redirector, create_form
from oauthpipe.registry import CLIENT, SERVER, FunctionRegistry
from oauthpipe.resolver import MISSING, ValueResolver, walk_path

logger = logging.getLogger(__name__)

BEFORE_REDIRECT = "before_redirect"
AFTER_REDIRECT = "after_redirect"


@dataclass
class PipelineResult:
    """Outcome of one stage.

    Attributes:
        ledger: Ledger after the stage (includes records carried in).
        results: The result accumulator.
        redirect: The redirect form built by a terminal before-redirect step.
        exhausted_step: Name of the step whose retries ran out, which ended
            the stage early.
    """

    ledger: Ledger
    results: dict[str, Any] = field(default_factory=dict)
    redirect: Optional[RedirectForm] = None
    exhausted_step: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exhausted_step is None


def project_results(to_return: Mapping[str, Union[str, list[str]]], response: Any) -> dict[str, Any]:
    """Extract the configured ``to_return`` paths from *response*.

    ``"all"`` takes the whole response; a list of keys is walked into it.

    Raises:
        ResolutionError: If a path runs into a missing key or a node that
            is not an object.
    """
    projected: dict[str, Any] = {}
    for key, path in to_return.items():
        if path == "all":
            projected[key] = response
            continue
        value = walk_path(response, path)
        if value is MISSING:
            raise ResolutionError(f"Path {path!r} for '{key}' does not exist in the response")
        projected[key] = value
    return projected


async def _call_hook(hook: Optional[Callable[..., Any]], *args: Any) -> None:
    if hook is None:
        return
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


class PipelineRunner:
    """Drive the stages of one provider.

    Args:
        provider: Provider name (used in logs and the state envelope).
        config: The provider's step configuration.
        context: ``"client"`` or ``"server"``.
        timeout: Default per-attempt timeout in seconds.
        error_handler: Global backstop error handler.
        executor: Request executor (a fresh one by default).
        registry: Library function catalog (the built-in one by default).
        bridge: Where a terminal before-redirect step saves its state.
        redirector: Receives the redirect form of a terminal step.

    Example::

        runner = PipelineRunner("github", config, context="server")
        result = await runner.run_stage("after_redirect", ledger=ledger, overrides=url_params)
    """

    def __init__(
        self,
        provider: str,
        config: CustomProviderConfig,
        context: str = SERVER,
        timeout: float = 5.0,
        error_handler: Optional[ErrorHandler] = None,
        executor: Optional[RequestExecutor] = None,
        registry: Optional[FunctionRegistry] = None,
        bridge: Optional[RedirectBridge] = None,
        redirector: Optional[Redirector] = None,
    ) -> None:
        self.provider = provider
        self.config = config
        self.context = context
        self.timeout = timeout
        self.error_handler = error_handler
        self.executor = executor or RequestExecutor()
        self.registry = registry
        self.bridge = bridge
        self.redirector = redirector
        self.log = StepLog(provider, enabled=config.step_logging)

    async def run_stage(
        self,
        stage_name: str,
        ledger: Optional[Ledger] = None,
        results: Optional[dict[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        user_state: Any = None,
        target: Any = None,
    ) -> PipelineResult:
        """Run every step of *stage_name* in declaration order.

        Args:
            stage_name: ``"before_redirect"`` or ``"after_redirect"``.
            ledger: Records carried over from the other stage.
            results: Result accumulator carried over from the other stage.
            overrides: Parameters the provider sent back with the redirect.
                They are layered over the params list of the first step and
                act as a fallback for references.
            user_state: Caller state saved with the ledger in ``"ls"`` mode.
            target: Passed through to :meth:`Redirector.submit`.

        Returns:
            The :class:`PipelineResult` of the stage.
        """
        stage = self.config.urls.stage(stage_name)
        ledger = ledger.copy() if ledger is not None else Ledger()
        results = dict(results or {})
        outcome = PipelineResult(ledger=ledger, results=results)
        self.log(f"Starting {stage_name}", steps=len(stage), context=self.context)

        last = len(stage) - 1
        for index, (url, step) in enumerate(stage.items()):
            name = step.step_name(url)
            params = dict(self.config.params_list)
            if index == 0 and overrides:
                params.update(overrides)
            terminal = stage_name == BEFORE_REDIRECT and self.context == CLIENT and index == last

            self.log(f"Step {index + 1}/{len(stage)}: {name}", url=url, terminal=terminal)
            record, body = await self._prepare(url, step, params, ledger, overrides)
            if terminal:
                outcome.redirect = await self._redirect(
                    name, url, step, record, ledger, results, user_state, target
                )
                break

            response = await self._execute(step, record, body, ledger)
            record = FetchRecord(request=record.request, response=ERROR_MARKER if response is None else response)
            await _call_hook(self.config.observability.on_request_end, record)

            if is_retry_exhausted(response):
                ledger.append(name, record)
                outcome.exhausted_step = name
                logger.warning("%s: step '%s' exhausted its retries, stopping %s", self.provider, name, stage_name)
                break

            try:
                results.update(project_results(step.response.to_return, record.response))
            except OAuthPipeError as exc:
                raise_error(exc, *self._response_handlers(step))
            await _call_hook(step.before_next_step, ledger, record)
            ledger.append(name, record)
            self.log(f"Completed {name}", results=sorted(results))

        if stage_name == AFTER_REDIRECT:
            results["name"] = self.provider
        return outcome

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _request_handlers(self, step: StepConfig) -> tuple[Optional[ErrorHandler], ...]:
        return (step.request.on_error, self.config.observability.on_error, self.error_handler)

    def _response_handlers(self, step: StepConfig) -> tuple[Optional[ErrorHandler], ...]:
        return (step.response.on_error,) + self._request_handlers(step)

    async def _prepare(
        self,
        url: str,
        step: StepConfig,
        params: Mapping[str, Any],
        ledger: Ledger,
        overrides: Optional[Mapping[str, Any]],
    ) -> tuple[FetchRecord, Optional[str]]:
        """Resolve the request of *step* into a record plus its encoded body."""
        spec = step.request
        resolver = ValueResolver(params, ledger, self.context, self.registry, overrides)
        record = FetchRecord(request=RequestRecord(method=spec.method, url=url))
        try:
            url_params = await resolver.resolve(spec.url_params, record)
            record = _with_request(record, url_params=url_params)
            headers = await resolver.resolve(spec.headers, record)
            record = _with_request(record, headers=headers)
            if isinstance(spec.body, str):
                body: Any = spec.body
            elif spec.body:
                body = await resolver.resolve(spec.body, record)
            else:
                body = {}
            encoded = encode_body(body, spec.body_encoding)
        except OAuthPipeError as exc:
            raise_error(exc, *self._request_handlers(step))

        full_url = build_url(url, url_params, percent=spec.percent_encode)
        logger.debug("%s %s headers=%s", spec.method, full_url, sorted(headers))
        return _with_request(record, url=full_url, body=body), encoded

    async def _execute(self, step: StepConfig, record: FetchRecord, body: Optional[str], ledger: Ledger) -> Any:
        observability = self.config.observability
        await _call_hook(observability.on_request_start, record)
        if step.proxy:
            self.log("Routing through proxy", proxy=step.proxy)
        return await self.executor.execute(
            record,
            body,
            parse_type=step.response.parse_type,
            validators=step.response.validators,
            timeout=step.request.timeout or self.timeout,
            retries=step.request.retries,
            proxy=step.proxy,
            ledger=ledger,
            handlers=self._response_handlers(step),
            on_retry=observability.on_retry,
        )

    async def _redirect(
        self,
        name: str,
        url: str,
        step: StepConfig,
        record: FetchRecord,
        ledger: Ledger,
        results: dict[str, Any],
        user_state: Any,
        target: Any,
    ) -> RedirectForm:
        """Turn the terminal before-redirect step into a saved-state redirect."""
        request = record.request
        fields: dict[str, Any] = dict(request.url_params)
        if isinstance(request.body, str):
            if request.body:
                fields["body"] = request.body
        else:
            fields.update(request.body)
        form = create_form(fields, url, request.method)
        record = FetchRecord(request=request, response={})

        await _call_hook(step.before_next_step, ledger, record)
        ledger.append(name, record)

        if self.bridge is not None:
            state = state_envelope(self.provider, user_state) if self.config.mode == "ls" else None
            self.bridge.save(ledger, results, state)
        else:
            logger.debug("%s: no bridge, ledger is not persisted across the redirect", self.provider)

        if step.test:
            self.log("Test mode: redirect built but not submitted", action=form.action)
        elif self.redirector is None:
            raise_error(
                ConfigError("No redirector configured to send the user agent to the provider"),
                *self._request_handlers(step),
            )
        else:
            self.log("Redirecting", action=form.action, method=form.method)
            self.redirector.submit(form, target)
        return form


def _with_request(record: FetchRecord, **changes: Any) -> FetchRecord:
    return record.model_copy(update={"request": record.request.model_copy(update=changes)})
