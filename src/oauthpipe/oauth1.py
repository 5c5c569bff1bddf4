"""OAuth 1.0a request signing (:rfc:`5849`).

Stateless helpers composing the HMAC-SHA1 signature algorithm:

1. :func:`construct_oauth_data` builds the protocol parameters (consumer
   key, nonce, signature method, timestamp, version, callback, extras).
2. :func:`parameter_string` merges them with the target URL's own query
   parameters, sorts by key and percent-encodes ``key=value`` pairs.
3. :func:`base_string` joins ``METHOD&encoded-base-url&encoded-params``.
4. :func:`signing_key` is ``encode(consumer_secret)&encode(token_secret)``.
5. :func:`get_signature` HMACs the base string with the key, base64-encodes
   it and percent-encodes the result unless told not to.

The same helpers are exposed to custom-provider configurations through the
library function registry.  In the client context, where secrets must not be
handled, :func:`get_signature_via_server` asks the server's helper endpoint
to compute the signature instead.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import inspect
import secrets
import time
from typing import Any, Awaitable, Callable, Mapping, Optional, Union
from urllib.parse import unquote

import httpx

from oauthpipe.encoding import percent_encode

HashingFunction = Callable[[str, str], Union[str, Awaitable[str]]]

_NONCE_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_NONCE_LENGTH = 11


def get_nonce() -> str:
    """Return an 11-character random alphanumeric nonce."""
    return "".join(secrets.choice(_NONCE_ALPHABET) for _ in range(_NONCE_LENGTH))


def get_timestamp() -> int:
    """Return the current Unix time in whole seconds."""
    return int(time.time())


def construct_oauth_data(
    consumer_key: str,
    callback: Optional[str] = None,
    signature_method: str = "HMAC-SHA1",
    version: str = "1.0",
    extra: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Build the OAuth protocol parameter set for one request.

    Args:
        consumer_key: The client (consumer) key.
        callback: Callback URL sent as ``oauth_callback``; omitted if ``None``.
        signature_method: Usually ``"HMAC-SHA1"``.
        version: Protocol version, ``"1.0"``.
        extra: Flow-specific parameters (``oauth_token``,
            ``oauth_verifier``...) merged last.

    Returns:
        The parameter mapping, nonce and timestamp freshly generated.
    """
    data: dict[str, Any] = {
        "oauth_consumer_key": consumer_key,
        "oauth_nonce": get_nonce(),
        "oauth_signature_method": signature_method,
        "oauth_timestamp": get_timestamp(),
        "oauth_version": version,
    }
    if callback is not None:
        data["oauth_callback"] = callback
    data.update(extra or {})
    return data


def decode_query_params(url: str) -> dict[str, Any]:
    """Return the query parameters of *url*, decoded.

    Repeated keys collect into a list in order of appearance.
    """
    _, _, query = url.partition("?")
    if not query:
        return {}
    result: dict[str, Any] = {}
    for pair in query.split("&"):
        key, _, value = pair.partition("=")
        value = unquote(value)
        if key in result:
            existing = result[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[key] = [existing, value]
        else:
            result[key] = value
    return result


def merge_params(first: Mapping[str, Any], second: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new mapping with *second* layered over *first*."""
    return {**first, **second}


def sort_params(params: Mapping[str, Any]) -> dict[str, Any]:
    """Return *params* sorted lexicographically by key."""
    return {key: params[key] for key in sorted(params)}


def _pairs(key: str, value: Any) -> list[str]:
    if isinstance(value, list):
        return [f"{key}={percent_encode(item)}" for item in sorted(value)]
    if isinstance(value, bool):
        value = "true" if value else "false"
    return [f"{key}={percent_encode(value)}"]


def parameter_string(oauth_data: Mapping[str, Any], url: str) -> str:
    """Sorted, percent-encoded parameter string, itself percent-encoded."""
    params = sort_params(merge_params(oauth_data, decode_query_params(url)))
    joined = "&".join(pair for key, value in params.items() for pair in _pairs(key, value))
    return percent_encode(joined)


def base_url(url: str) -> str:
    """The percent-encoded URL without its query string."""
    return percent_encode(url.split("?", 1)[0])


def base_string(method: str, url: str, oauth_data: Mapping[str, Any]) -> str:
    """``METHOD&encoded-base-url&encoded-parameter-string``."""
    return f"{method.upper()}&{base_url(url)}&{parameter_string(oauth_data, url)}"


def signing_key(token_secret: Optional[str], consumer_secret: str) -> str:
    """``encode(consumer_secret)&encode(token_secret or "")``."""
    return f"{percent_encode(consumer_secret)}&{percent_encode(token_secret or '')}"


def hmac_sha1_signature(key: str, text: str) -> str:
    """Base64 HMAC-SHA1 digest of *text* keyed with *key*."""
    digest = hmac.new(key.encode("utf-8"), text.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def get_signature(
    url: str,
    method: str,
    oauth_data: Mapping[str, Any],
    token_secret: Optional[str],
    consumer_secret: str,
    hashing_function: Optional[Callable[[str, str], str]] = None,
    encode: bool = True,
) -> str:
    """Compute the ``oauth_signature`` for a request.

    Args:
        url: Target URL, query string included.
        method: HTTP method.
        oauth_data: Protocol parameters from :func:`construct_oauth_data`.
        token_secret: Token secret, empty for the request-token leg.
        consumer_secret: Client (consumer) secret.
        hashing_function: Replacement for :func:`hmac_sha1_signature`,
            called as ``(signing_key, base_string)``.
        encode: Percent-encode the signature (default).  Pass ``False`` when
            the caller encodes it later.

    Returns:
        The signature string.
    """
    key = signing_key(token_secret, consumer_secret)
    text = base_string(method, url, sort_params(oauth_data))
    signature = (hashing_function or hmac_sha1_signature)(key, text)
    return percent_encode(signature) if encode else signature


async def get_signature_via_server(
    server_url: str,
    url: str,
    method: str,
    oauth_data: Mapping[str, Any],
    token_secret: Optional[str],
    consumer_secret: str,
    hashing_function: Optional[HashingFunction] = None,
    encode: bool = True,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Client-side signing: delegate the HMAC step to the server.

    Posts ``{"functionName": "get_signature", "functionParams": [...]}`` to
    *server_url* (the server's helper-function endpoint) and returns its
    ``data``.  If a local *hashing_function* is supplied it is used instead
    and no request is made, since functions cannot cross the wire.
    """
    if hashing_function is not None:
        key = signing_key(token_secret, consumer_secret)
        signature = hashing_function(key, base_string(method, url, sort_params(oauth_data)))
        if inspect.isawaitable(signature):
            signature = await signature
        return percent_encode(signature) if encode else signature

    payload = {
        "functionName": "get_signature",
        "functionParams": [url, method, dict(oauth_data), token_secret, consumer_secret, None, encode],
    }
    if client is not None:
        response = await client.post(server_url, json=payload)
    else:
        async with httpx.AsyncClient() as own_client:
            response = await own_client.post(server_url, json=payload)
    response.raise_for_status()
    return response.json()["data"]


def to_url_params(oauth_data: Mapping[str, Any], signature: str) -> str:
    """``?k=v&...&oauth_signature=<signature>`` with values percent-encoded.

    *signature* is appended as given (already encoded by :func:`get_signature`).
    """
    query = "".join(f"{key}={percent_encode(value)}&" for key, value in oauth_data.items())
    return f"?{query}oauth_signature={signature}"


def parse_token(response_text: str, key: str = "oauth_token") -> Optional[str]:
    """Extract *key* from a form-encoded token response, or ``None``."""
    for pair in response_text.split("&"):
        name, _, value = pair.partition("=")
        if name == key:
            return value
    return None
