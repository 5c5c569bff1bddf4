"""Tests for the server-side orchestrator."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conftest import Recorder, body_of, json_response, make_executor, text_response
from oauthpipe.exceptions import ConfigError, ResolutionError
from oauthpipe.models import EngineConfig
from oauthpipe.server import OAuthServer

TOKEN_URL = "https://acme.test/token"
PROFILE_URL = "https://acme.test/me"


def _engine(handler=None) -> EngineConfig:
    return EngineConfig(
        server_url="https://server.test",
        global_error_handler=handler,
        providers={
            "github": {
                "client_id": "gh-id",
                "client_secret": "gh-secret",
                "redirect_uri": "https://app.test/cb",
                "scope": "user:email",
            },
            "google": {
                "client_id": "g-id",
                "client_secret": "g-secret",
                "redirect_uri": "https://app.test/cb",
                "scope": "openid",
            },
            "x": {
                "client_id": "x-id",
                "client_secret": "x-secret",
                "redirect_uri": "https://app.test/cb",
                "flow_type": "1.0",
            },
        },
        custom_providers={
            "acme": {
                "server_endpoint": "/acme",
                "params_list": {"client_id": "abc", "client_secret": "shh"},
                "urls": {
                    "after_redirect": {
                        TOKEN_URL: {
                            "name": "token",
                            "request": {
                                "method": "POST",
                                "body": {
                                    "code": ["code"],
                                    "nonce": ["init", "response", "nonce"],
                                    "client_secret": lambda params, so_far, ledger, current: params["client_secret"],
                                },
                            },
                            "response": {"to_return": {"token": ["access_token"]}},
                        },
                        PROFILE_URL: {
                            "name": "profile",
                            "request": {"headers": {"Authorization": ["token", "response", "access_token"]}},
                            "response": {"to_return": {"user": "all"}},
                        },
                    }
                },
            }
        },
    )


def _server(recorder: Recorder, handler=None) -> OAuthServer:
    return OAuthServer(_engine(handler), executor=make_executor(recorder))


PREVIOUS = {"init": {"request": {"method": "GET", "url": "https://acme.test/init"}, "response": {"nonce": "N"}}}


# ---------------------------------------------------------------------------
# get_user
# ---------------------------------------------------------------------------


class TestGetUserCustom:
    @pytest.mark.asyncio
    async def test_after_redirect_stage(self) -> None:
        recorder = Recorder(
            {
                f"POST {TOKEN_URL}": json_response({"access_token": "AT"}),
                f"GET {PROFILE_URL}": json_response({"id": 9}),
            }
        )
        reply = await _server(recorder).get_user(
            {"provider": "Acme", "allUrlParams": {"code": "C"}, "previousFetchData": PREVIOUS}
        )

        assert body_of(recorder.requests[0]) == {"code": "C", "nonce": "N", "client_secret": "shh"}
        assert recorder.requests[1].headers["Authorization"] == "AT"
        assert reply["status"] == "success"
        assert list(reply["data"]["previousFetchData"]) == ["init", "token", "profile"]
        assert reply["data"]["previousFetchData"]["token"]["request"]["body"]["code"] == "C"
        assert reply["data"]["toReturnObject"] == {"token": "AT", "user": {"id": 9}, "name": "acme"}

    @pytest.mark.asyncio
    async def test_missing_params(self) -> None:
        reply = await _server(Recorder({})).get_user({"provider": "acme", "allUrlParams": {}})
        assert reply == {"status": "error", "data": {"error": "Invalid Params passed", "data": None}}

    @pytest.mark.asyncio
    async def test_stage_failure_reported_and_raised(self) -> None:
        handler = MagicMock()
        with pytest.raises(ResolutionError):
            await _server(Recorder({}), handler).get_user(
                {"provider": "acme", "allUrlParams": {}, "previousFetchData": PREVIOUS}
            )
        handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_exhausted_step_reported_as_error(self) -> None:
        recorder = Recorder({f"POST {TOKEN_URL}": json_response({}, 503)})
        reply = await _server(recorder).get_user(
            {"provider": "acme", "allUrlParams": {"code": "C"}, "previousFetchData": PREVIOUS}
        )
        assert reply["status"] == "error"
        assert reply["data"]["previousFetchData"]["token"]["response"] == {"error": "Max Retries Reached"}


class TestGetUserNative:
    @pytest.mark.asyncio
    async def test_code_flow(self) -> None:
        recorder = Recorder(
            {
                "POST https://github.com/login/oauth/access_token": json_response({"access_token": "AT"}),
                "GET https://api.github.com/user/emails": json_response([{"email": "a@b.test"}]),
            }
        )
        reply = await _server(recorder).get_user({"provider": "github", "code": "C"})
        assert reply == {"status": "success", "data": [{"email": "a@b.test"}]}

    @pytest.mark.asyncio
    async def test_implicit_token(self) -> None:
        recorder = Recorder({"https://www.googleapis.com/": json_response({"sub": "1"})})
        reply = await _server(recorder).get_user({"provider": "google", "code": "AT"})
        assert reply == {"status": "success", "data": {"sub": "1"}}
        assert recorder.requests[0].headers["Authorization"] == "Bearer AT"

    @pytest.mark.asyncio
    async def test_missing_code(self) -> None:
        reply = await _server(Recorder({})).get_user({"provider": "github"})
        assert reply["data"]["error"] == "Code not found"

    @pytest.mark.asyncio
    async def test_provider_failure_is_an_error_payload(self) -> None:
        handler = MagicMock()
        recorder = Recorder({"POST https://github.com/": json_response({"error": "bad_code"}, 400)})
        reply = await _server(recorder, handler).get_user({"provider": "github", "code": "C"})
        assert reply["status"] == "error"
        assert reply["data"]["error"] == "Error from provider"
        handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_oauth1(self) -> None:
        recorder = Recorder(
            {
                "POST https://api.twitter.com/oauth/access_token": text_response("oauth_token=AT&oauth_token_secret=S"),
                "GET https://api.twitter.com/1.1/": json_response({"id": 1}),
            }
        )
        reply = await _server(recorder).get_user({"provider": "x", "oauth_token": "RT", "oauth_verifier": "V"})
        assert reply == {"status": "success", "data": {"id": 1}}

    @pytest.mark.asyncio
    async def test_oauth1_missing_verifier(self) -> None:
        reply = await _server(Recorder({})).get_user({"provider": "x", "oauth_token": "RT"})
        assert reply["data"]["error"] == "OAuth Token or OAuth Verifier not found"


class TestGetUserUnknown:
    @pytest.mark.asyncio
    async def test_no_provider_field(self) -> None:
        reply = await _server(Recorder({})).get_user({})
        assert reply["status"] == "error"
        assert reply["data"]["error"] == "Provider not found"

    @pytest.mark.asyncio
    async def test_unknown_provider(self) -> None:
        handler = MagicMock()
        reply = await _server(Recorder({}), handler).get_user({"provider": "myspace"})
        assert reply == {"status": "error", "data": {"error": "No Provider Specified"}}
        handler.assert_called_once()


# ---------------------------------------------------------------------------
# helper_function / use_proxy
# ---------------------------------------------------------------------------


class TestHelperFunction:
    @pytest.mark.asyncio
    async def test_runs_catalog_function(self) -> None:
        reply = await _server(Recorder({})).helper_function(
            {"functionName": "percent_encode", "functionParams": ["a b"]}
        )
        assert reply == {"data": "a%20b"}

    @pytest.mark.asyncio
    async def test_signature_matches_local_computation(self) -> None:
        from oauthpipe.oauth1 import get_signature

        params = ["https://p.test/r?a=1", "POST", {"oauth_nonce": "n"}, "", "secret", None, True]
        reply = await _server(Recorder({})).helper_function({"functionName": "get_signature", "functionParams": params})
        assert reply["data"] == get_signature(*params)

    @pytest.mark.asyncio
    async def test_unknown_function(self) -> None:
        with pytest.raises(ConfigError, match="not found"):
            await _server(Recorder({})).helper_function({"functionName": "rm_rf"})


class TestUseProxy:
    @pytest.mark.asyncio
    async def test_forwards_request(self) -> None:
        recorder = Recorder({"POST https://api.test/token": text_response("oauth_token=T")})
        reply = await _server(recorder).use_proxy(
            {
                "url": "https://api.test/token",
                "method": "post",
                "headers": {"X-Test": "1"},
                "body": "a=1",
                "parseResponseType": "text",
            }
        )
        assert reply == {"status": "success", "data": "oauth_token=T"}
        assert recorder.requests[0].headers["X-Test"] == "1"
        assert recorder.requests[0].content == b"a=1"

    @pytest.mark.asyncio
    async def test_mapping_body_sent_as_json(self) -> None:
        recorder = Recorder({"POST https://api.test/": json_response({"ok": True})})
        reply = await _server(recorder).use_proxy({"url": "https://api.test/x", "method": "POST", "body": {"a": 1}})
        assert reply == {"status": "success", "data": {"ok": True}}
        assert body_of(recorder.requests[0]) == {"a": 1}

    @pytest.mark.asyncio
    async def test_upstream_failure(self) -> None:
        recorder = Recorder({"https://api.test/": json_response({}, 500)})
        reply = await _server(recorder).use_proxy({"url": "https://api.test/x"})
        assert reply["status"] == "error"
        assert "HTTP 500" in reply["data"]

    @pytest.mark.asyncio
    async def test_retryable_upstream_status_is_an_error(self) -> None:
        recorder = Recorder({"GET https://api.test/x": json_response({"e": 1}, 503)})
        reply = await _server(recorder).use_proxy({"url": "https://api.test/x"})
        assert reply == {"status": "error", "data": {"error": "Max Retries Reached"}}

    @pytest.mark.asyncio
    async def test_missing_url(self) -> None:
        handler = MagicMock()
        with pytest.raises(ConfigError, match="Invalid Parameters Given"):
            await _server(Recorder({}), handler).use_proxy({"method": "GET"})
        handler.assert_called_once()
