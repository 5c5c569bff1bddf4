"""URL, body and response encoding helpers shared by the pipeline and signer."""

from __future__ import annotations

import html
import json
from typing import Any, Mapping, Optional
from urllib.parse import quote, unquote, urlencode

from oauthpipe.exceptions import ConfigError

ERROR_MARKER = "Error"
"""Response value recorded when a step produced no response at all."""

BODY_FORMATS = ("json", "url", "text")
PARSE_TYPES = ("json", "text")


def percent_encode(value: Any) -> str:
    """RFC 3986 percent-encoding as used by OAuth 1.0a.

    Stricter than :func:`uri_component`: ``! * ' ( )`` are escaped too.
    Only ``A-Z a-z 0-9 - . _ ~`` pass through.
    """
    return quote(str(value), safe="~")


def uri_component(value: Any) -> str:
    """Generic URI component encoding (leaves ``! * ' ( ) ~`` untouched)."""
    return quote(str(value), safe="!~*'()")


def to_query_string(params: Mapping[str, Any], percent: bool = False) -> str:
    """Render *params* as ``?k=v&k2=v2`` (empty string when *params* is empty).

    Keys are emitted as written; values are encoded with
    :func:`percent_encode` when *percent* is set, else :func:`uri_component`.
    """
    if not params:
        return ""
    encode = percent_encode if percent else uri_component
    return "?" + "&".join(f"{key}={encode(value)}" for key, value in params.items())


def build_url(url: str, params: Mapping[str, Any], percent: bool = False) -> str:
    """Append *params* to *url*, joining with ``&`` if it already has a query."""
    query = to_query_string(params, percent)
    if query and "?" in url:
        return url + "&" + query[1:]
    return url + query


def encode_body(body: Any, body_format: str) -> Optional[str]:
    """Serialise a resolved body for the wire.

    Args:
        body: Resolved body mapping or a raw string.
        body_format: ``"json"``, ``"url"`` (form-url-encoded) or ``"text"``.

    Returns:
        The encoded body, or ``None`` when there is nothing to send.

    Raises:
        ConfigError: For an unknown format, or ``"text"`` with a non-string
            body.
    """
    if body_format == "json":
        if isinstance(body, str):
            return body or None
        return json.dumps(body) if body else None
    if body_format == "url":
        if isinstance(body, str):
            return body or None
        return urlencode(body) if body else None
    if body_format == "text":
        if not isinstance(body, str):
            raise ConfigError(
                "Raw text body encoding requires the body to be a string",
                "Use bodyEncoding 'json' or 'url' for mapping bodies",
            )
        return body or None
    raise ConfigError(
        f"Invalid body encoding format: {body_format!r}",
        f"The body encoding must be one of {', '.join(BODY_FORMATS)}",
    )


def parse_body(text: str, parse_type: str) -> Any:
    """Parse a response payload as JSON or keep it as text.

    Raises:
        ConfigError: For an unknown parse type.
        ValueError: If *parse_type* is ``"json"`` and *text* is not JSON.
    """
    if parse_type == "json":
        return json.loads(text)
    if parse_type == "text":
        return text
    raise ConfigError(
        f"Invalid response parse type: {parse_type!r}",
        f"The parse type must be one of {', '.join(PARSE_TYPES)}",
    )


def decode_html_entities(text: str) -> str:
    """Decode HTML character references (``&amp;`` -> ``&``)."""
    return html.unescape(text)


def decode_all_uri_components(params: Mapping[str, str]) -> dict[str, str]:
    return {key: unquote(value) for key, value in params.items()}


def convert_strings_to_object(params: Mapping[str, str]) -> dict[str, Any]:
    """Return the entries of *params* whose values are JSON objects, parsed.

    Values that look like ``{...}`` but are not valid JSON are skipped.
    """
    converted: dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, str) and value.startswith("{") and value.endswith("}"):
            try:
                converted[key] = json.loads(value)
            except ValueError:
                continue
    return converted


def clean_mapping(params: Mapping[str, Any]) -> dict[str, Any]:
    """Drop falsy values."""
    return {key: value for key, value in params.items() if value}
