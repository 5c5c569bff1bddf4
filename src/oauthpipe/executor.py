"""Request Executor -- one HTTP request with timeout, proxying and retries.

:class:`RequestExecutor` sends a single step's request through
:class:`httpx.AsyncClient` and runs the retry state machine around it::

    attempting --ok--> succeeded
        |
        +--failure--> retry_on(error, status)? --no--> fatal (raised)
                          |
                          yes --> attempts left? --no--> {"error": "Max Retries Reached"}
                                      |
                                      yes --> backoff, on_retry, sleep --> attempting

A failure is a non-2xx status, a network error, a timeout, an unparsable
body or a validator rejecting the response.  Proxy failures and
configuration errors are always fatal.  Exhausting the retries is *not* an
exception: callers get the terminal payload and can tell "gave up" apart
from "refused to retry".
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence

import httpx

from oauthpipe.encoding import parse_body
from oauthpipe.errors import ErrorHandler, raise_error
from oauthpipe.exceptions import (
    ConfigError,
    OAuthPipeError,
    ProxyError,
    RequestTimeoutError,
    ResponseStatusError,
    ResponseValidationError,
    TransportError,
    status_code_of,
)
from oauthpipe.models import FetchRecord, Ledger, RetryContext, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_STATUSES = (429, 503)
MAX_RETRIES_REACHED = "Max Retries Reached"

Sleep = Callable[[float], Awaitable[Any]]


def default_retry_on(error: BaseException, status_code: int) -> bool:
    """Retry on HTTP 429 (rate limited) and 503 (unavailable) only."""
    return status_code in DEFAULT_RETRY_STATUSES


def is_retry_exhausted(response: Any) -> bool:
    """True if *response* is the executor's terminal give-up payload."""
    return isinstance(response, dict) and response.get("error") == MAX_RETRIES_REACHED


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RequestExecutor:
    """Send requests with per-attempt timeouts and a configurable retry loop.

    Args:
        client: Shared :class:`httpx.AsyncClient`.  When given, the caller
            owns it; otherwise a client is opened and closed per call.
        sleep: Awaitable used to wait between attempts (``asyncio.sleep``).
        clock: Wall-clock source for the retry context (``time.time``).

    Example::

        executor = RequestExecutor()
        payload = await executor.execute(record, body=None, timeout=5.0)
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._sleep = sleep
        self._clock = clock

    @property
    def client(self) -> Optional[httpx.AsyncClient]:
        """The injected client, if any."""
        return self._client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(follow_redirects=True) as client:
            yield client

    async def execute(
        self,
        record: FetchRecord,
        body: Optional[str] = None,
        *,
        parse_type: str = "json",
        validators: Sequence[Callable[..., Any]] = (),
        timeout: float = 5.0,
        retries: Optional[RetryPolicy] = None,
        proxy: Optional[str] = None,
        ledger: Optional[Ledger] = None,
        handlers: Sequence[Optional[ErrorHandler]] = (),
        on_retry: Optional[Callable[..., Any]] = None,
    ) -> Any:
        """Send the request described by ``record.request`` until it succeeds or retries run out.

        Args:
            record: Record of the step; its request half supplies method,
                final URL and headers.  Validators see a copy carrying the
                parsed response.
            body: Encoded body, ``None`` to send none.
            parse_type: ``"json"`` or ``"text"``.
            validators: ``(ledger, record)`` predicates that must all pass.
            timeout: Seconds allowed per attempt.
            retries: Retry policy (defaults apply to unset fields).
            proxy: Route the request through this proxy endpoint.
            ledger: Ledger handed to validators and the retry context.
            handlers: Error handlers, nearest first.
            on_retry: Fallback ``on_retry`` hook when the policy has none.

        Returns:
            The parsed, validated response, or ``{"error": "Max Retries
            Reached"}`` when every allowed attempt failed retryably.

        Raises:
            OAuthPipeError: The first non-retryable failure, after it was
                reported to the nearest handler.
        """
        policy = retries or RetryPolicy()
        max_attempts = policy.max_retries or DEFAULT_MAX_RETRIES
        retry_on = policy.retry_on or default_retry_on
        backoff = policy.backoff or (lambda attempt, ctx: timeout)
        on_retry = policy.on_retry or on_retry
        ledger = ledger if ledger is not None else Ledger()
        request = record.request

        attempts = 0
        started = self._clock()
        last_attempt = started
        delay = 0.0
        async with self._session() as client:
            while attempts < max_attempts:
                logger.debug("%s %s (attempt %d/%d)", request.method, request.url, attempts + 1, max_attempts)
                try:
                    return await asyncio.wait_for(
                        self._attempt(client, record, body, parse_type, validators, timeout, proxy, ledger),
                        timeout,
                    )
                except (ProxyError, ConfigError) as exc:
                    raise_error(exc, *handlers)
                except asyncio.TimeoutError:
                    error: OAuthPipeError = RequestTimeoutError(
                        f"{request.method} {request.url} took longer than {timeout}s and was aborted"
                    )
                except OAuthPipeError as exc:
                    error = exc

                attempts += 1
                logger.debug("Attempt %d failed: %s", attempts, error)
                if not await _maybe_await(retry_on(error, status_code_of(error))):
                    raise_error(error, *handlers)
                if attempts >= max_attempts:
                    break

                ctx = RetryContext(
                    attempt_number=attempts,
                    error=error,
                    total_elapsed_time=self._clock() - started,
                    last_attempt_timestamp=last_attempt,
                    retry_delay=delay,
                    max_retries=max_attempts,
                    ledger=ledger,
                )
                delay = await _maybe_await(backoff(attempts, ctx))
                if on_retry is not None:
                    await _maybe_await(on_retry(ctx))
                logger.info("Retrying %s in %ss (attempt %d/%d)", request.url, delay, attempts + 1, max_attempts)
                await self._sleep(delay)
                last_attempt = self._clock()

        logger.warning("Giving up on %s %s after %d attempts", request.method, request.url, attempts)
        return {"error": MAX_RETRIES_REACHED}

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        record: FetchRecord,
        body: Optional[str],
        parse_type: str,
        validators: Sequence[Callable[..., Any]],
        timeout: float,
        proxy: Optional[str],
        ledger: Ledger,
    ) -> Any:
        request = record.request
        try:
            if proxy:
                response = await client.post(
                    proxy,
                    json={
                        "url": request.url,
                        "method": request.method,
                        "headers": request.headers,
                        "body": body,
                        "parseResponseType": parse_type,
                    },
                    timeout=timeout,
                )
            else:
                response = await client.request(
                    request.method, request.url, headers=request.headers, content=body, timeout=timeout
                )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"{request.method} {request.url} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{request.method} {request.url} failed: {exc}") from exc

        if not response.is_success:
            raise ResponseStatusError(
                f"{request.method} {request.url} returned HTTP {response.status_code}",
                status_code=response.status_code,
                details=response.text[:200],
            )

        parsed = self._unwrap_proxy(response, proxy) if proxy else self._parse(response, parse_type)

        candidate = FetchRecord(request=request, response=parsed)
        for index, validator in enumerate(validators, start=1):
            try:
                passed = await _maybe_await(validator(ledger, candidate))
            except OAuthPipeError:
                raise
            except Exception as exc:
                raise ResponseValidationError(
                    f"Validation {index} of {len(validators)} for {request.url} raised {type(exc).__name__}: {exc}"
                ) from exc
            if not passed:
                raise ResponseValidationError(
                    f"Response of {request.url} failed validation {index} of {len(validators)}"
                )
        return parsed

    @staticmethod
    def _parse(response: httpx.Response, parse_type: str) -> Any:
        try:
            return parse_body(response.text, parse_type)
        except ValueError as exc:
            raise ResponseValidationError(
                f"Response of {response.request.url} is not valid {parse_type}: {exc}"
            ) from exc

    @staticmethod
    def _unwrap_proxy(response: httpx.Response, proxy: str) -> Any:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProxyError(f"Proxy {proxy} did not answer with JSON") from exc
        if not isinstance(payload, dict) or payload.get("status") != "success" or "data" not in payload:
            raise ProxyError(
                f"Proxy {proxy} did not answer with status 'success' and data",
                json.dumps(payload)[:200] if payload is not None else None,
            )
        return payload["data"]
