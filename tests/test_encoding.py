"""Tests for URL, body and response encoding helpers."""

from __future__ import annotations

import json

import pytest

from oauthpipe.encoding import (
    build_url,
    clean_mapping,
    convert_strings_to_object,
    decode_all_uri_components,
    decode_html_entities,
    encode_body,
    parse_body,
    percent_encode,
    to_query_string,
    uri_component,
)
from oauthpipe.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Percent encoding
# ---------------------------------------------------------------------------


class TestPercentEncode:
    def test_escapes_sub_delims_beyond_uri_component(self) -> None:
        assert percent_encode("it's (ok)!") == "it%27s%20%28ok%29%21"

    def test_uri_component_leaves_sub_delims(self) -> None:
        assert uri_component("it's (ok)!") == "it's%20(ok)!"

    def test_unreserved_pass_through(self) -> None:
        assert percent_encode("AZaz09-._~") == "AZaz09-._~"

    def test_star_and_reserved(self) -> None:
        assert percent_encode("a*b/c?d=e&f") == "a%2Ab%2Fc%3Fd%3De%26f"

    def test_non_string_values_stringified(self) -> None:
        assert percent_encode(1700000000) == "1700000000"

    def test_utf8(self) -> None:
        assert percent_encode("é") == "%C3%A9"


# ---------------------------------------------------------------------------
# Query strings
# ---------------------------------------------------------------------------


class TestQueryString:
    def test_empty(self) -> None:
        assert to_query_string({}) == ""

    def test_generic_encoding(self) -> None:
        assert to_query_string({"a": "x y", "b": "(1)"}) == "?a=x%20y&b=(1)"

    def test_percent_encoding(self) -> None:
        assert to_query_string({"b": "(1)"}, percent=True) == "?b=%281%29"

    def test_build_url_appends(self) -> None:
        assert build_url("https://p.test/auth", {"a": "1"}) == "https://p.test/auth?a=1"

    def test_build_url_extends_existing_query(self) -> None:
        assert build_url("https://p.test/auth?x=0", {"a": "1"}) == "https://p.test/auth?x=0&a=1"

    def test_build_url_no_params(self) -> None:
        assert build_url("https://p.test/auth", {}) == "https://p.test/auth"


# ---------------------------------------------------------------------------
# Bodies
# ---------------------------------------------------------------------------


class TestEncodeBody:
    def test_json(self) -> None:
        assert json.loads(encode_body({"a": "1"}, "json")) == {"a": "1"}

    def test_url(self) -> None:
        assert encode_body({"a": "1", "b": "x y"}, "url") == "a=1&b=x+y"

    def test_text_requires_string(self) -> None:
        with pytest.raises(ConfigError, match="requires the body to be a string"):
            encode_body({"a": "1"}, "text")

    def test_text_passthrough(self) -> None:
        assert encode_body("raw payload", "text") == "raw payload"

    def test_raw_string_with_json_format_kept(self) -> None:
        assert encode_body('{"a":1}', "json") == '{"a":1}'

    @pytest.mark.parametrize("fmt", ["json", "url"])
    def test_empty_body_sends_nothing(self, fmt) -> None:
        assert encode_body({}, fmt) is None

    def test_unknown_format(self) -> None:
        with pytest.raises(ConfigError, match="Invalid body encoding"):
            encode_body({"a": "1"}, "xml")


class TestParseBody:
    def test_json(self) -> None:
        assert parse_body('{"a": 1}', "json") == {"a": 1}

    def test_text(self) -> None:
        assert parse_body("a=1&b=2", "text") == "a=1&b=2"

    def test_invalid_json_raises_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_body("not json", "json")

    def test_unknown_type(self) -> None:
        with pytest.raises(ConfigError):
            parse_body("x", "xml")


# ---------------------------------------------------------------------------
# Object utilities
# ---------------------------------------------------------------------------


class TestUtilities:
    def test_decode_html_entities(self) -> None:
        assert decode_html_entities("a=1&amp;b=2") == "a=1&b=2"

    def test_decode_all_uri_components(self) -> None:
        assert decode_all_uri_components({"a": "x%20y", "b": "%7B%7D"}) == {"a": "x y", "b": "{}"}

    def test_convert_strings_to_object(self) -> None:
        result = convert_strings_to_object({"a": '{"x": 1}', "b": "plain", "c": "{broken"})
        assert result == {"a": {"x": 1}}

    def test_clean_mapping(self) -> None:
        assert clean_mapping({"a": "1", "b": "", "c": None, "d": 0}) == {"a": "1"}
