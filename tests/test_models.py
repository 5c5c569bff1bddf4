"""Tests for configuration models, fetch records and the ledger."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from conftest import record
from oauthpipe.exceptions import ConfigError
from oauthpipe.models import (
    CustomProviderConfig,
    EngineConfig,
    FetchRecord,
    Ledger,
    ProviderConfig,
    RequestSpec,
    ResponseSpec,
    StagesConfig,
    StepConfig,
    normalize_validator,
)
from oauthpipe.values import LiteralValue, ReferenceValue


def _native(**overrides) -> dict:
    data = {"client_id": "id", "client_secret": "secret", "redirect_uri": "https://app.test/cb", "scope": "email"}
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Records and ledger
# ---------------------------------------------------------------------------


class TestFetchRecord:
    def test_wire_form_uses_url_params_alias(self) -> None:
        rec = record({"a": 1}, method="GET", url="https://p.test/", url_params={"x": "1"})
        wire = rec.to_wire()
        assert wire["request"]["urlParams"] == {"x": "1"}
        assert wire["response"] == {"a": 1}

    def test_from_wire(self) -> None:
        rec = FetchRecord.from_wire({"request": {"method": "POST", "urlParams": {"x": "1"}}, "response": "text"})
        assert rec.request.method == "POST"
        assert rec.request.url_params == {"x": "1"}
        assert rec.response == "text"

    def test_half(self) -> None:
        rec = record({"a": 1}, method="GET")
        assert rec.half("response") == {"a": 1}
        assert rec.half("request")["method"] == "GET"
        with pytest.raises(KeyError):
            rec.half("body")

    def test_frozen(self) -> None:
        with pytest.raises(ValidationError):
            record({}).response = {"changed": True}


class TestLedger:
    def test_append_preserves_order(self) -> None:
        ledger = Ledger()
        for name in ("c", "a", "b"):
            ledger.append(name, record({}))
        assert list(ledger) == ["c", "a", "b"]
        assert len(ledger) == 3

    def test_duplicate_name_rejected(self) -> None:
        ledger = Ledger()
        ledger.append("a", record({}))
        with pytest.raises(ConfigError, match="already in the ledger"):
            ledger.append("a", record({}))

    def test_copy_is_independent(self, token_ledger) -> None:
        copy = token_ledger.copy()
        copy.append("other", record({}))
        assert "other" not in token_ledger

    def test_wire_round_trip(self, token_ledger) -> None:
        restored = Ledger.from_wire(token_ledger.to_wire())
        assert restored["step1"] == token_ledger["step1"]

    def test_merge_accepts_wire_and_records(self) -> None:
        ledger = Ledger()
        ledger.merge({"a": {"request": {}, "response": {"x": 1}}, "b": record("t")})
        assert ledger["a"].response == {"x": 1}
        assert ledger["b"].response == "t"


# ---------------------------------------------------------------------------
# Step configuration
# ---------------------------------------------------------------------------


class TestRequestSpec:
    def test_method_uppercased(self) -> None:
        assert RequestSpec(method="post").method == "POST"

    def test_params_coerced(self) -> None:
        spec = RequestSpec(url_params={"a": "1", "b": ["s", "response", "x"]})
        assert spec.url_params == {"a": LiteralValue("1"), "b": ReferenceValue(("s", "response", "x"))}

    def test_raw_string_body_kept(self) -> None:
        assert RequestSpec(body="raw").body == "raw"

    def test_bad_value_rejected_at_build_time(self) -> None:
        with pytest.raises(ConfigError, match="Unsupported value for 'a'"):
            RequestSpec(headers={"a": 42})

    def test_unknown_body_encoding(self) -> None:
        with pytest.raises(ValidationError):
            RequestSpec(body_encoding="xml")

    def test_max_retries_at_least_one(self) -> None:
        with pytest.raises(ValidationError):
            RequestSpec(retries={"max_retries": 0})

    def test_unknown_field(self) -> None:
        with pytest.raises(ValidationError):
            RequestSpec(verb="GET")


class TestResponseSpec:
    def test_validate_alias(self) -> None:
        spec = ResponseSpec(validate=[lambda ledger, rec: True])
        assert len(spec.validators) == 1

    def test_to_return_forms(self) -> None:
        spec = ResponseSpec(to_return={"all": "all", "v": ["a", "b"]})
        assert spec.to_return == {"all": "all", "v": ["a", "b"]}

    def test_to_return_rejects_other_strings(self) -> None:
        with pytest.raises(ValidationError):
            ResponseSpec(to_return={"v": "some"})


class TestNormalizeValidator:
    def test_two_arguments_unchanged(self) -> None:
        func = lambda ledger, rec: True  # noqa: E731
        assert normalize_validator(func) is func

    def test_one_argument_wrapped(self) -> None:
        wrapped = normalize_validator(lambda ledger: ledger == "L")
        assert wrapped("L", "R") is True

    def test_no_arguments_wrapped(self) -> None:
        assert normalize_validator(lambda: True)("L", "R") is True

    def test_varargs_unchanged(self) -> None:
        func = lambda *args: True  # noqa: E731
        assert normalize_validator(func) is func


class TestStagesConfig:
    def test_step_name_defaults_to_url(self) -> None:
        assert StepConfig().step_name("https://p.test/") == "https://p.test/"
        assert StepConfig(name="n").step_name("https://p.test/") == "n"

    def test_duplicate_names_across_stages(self) -> None:
        with pytest.raises(ValidationError, match="Duplicate step name 'same'"):
            StagesConfig(
                before_redirect={"https://a.test/": {"name": "same"}},
                after_redirect={"https://b.test/": {"name": "same"}},
            )

    def test_stage_lookup(self) -> None:
        stages = StagesConfig(before_redirect={"https://a.test/": {}})
        assert list(stages.stage("before_redirect")) == ["https://a.test/"]
        with pytest.raises(ConfigError):
            stages.stage("during_redirect")


# ---------------------------------------------------------------------------
# Provider and engine configuration
# ---------------------------------------------------------------------------


class TestProviderConfig:
    def test_defaults(self) -> None:
        config = ProviderConfig(**_native())
        assert config.flow_type == "2.0"
        assert config.signature_method == "HMAC-SHA1"

    def test_env_credential(self, monkeypatch) -> None:
        monkeypatch.setenv("GH_SECRET", "from-env")
        assert ProviderConfig(**_native(client_secret="env:GH_SECRET")).client_secret == "from-env"

    def test_missing_env_credential(self, monkeypatch) -> None:
        monkeypatch.delenv("GH_SECRET", raising=False)
        with pytest.raises(ConfigError, match="GH_SECRET"):
            ProviderConfig(**_native(client_secret="env:GH_SECRET"))

    def test_file_credential(self, tmp_path) -> None:
        secret = tmp_path / "secret"
        secret.write_text("from-file\n")
        assert ProviderConfig(**_native(client_secret=f"file:{secret}")).client_secret == "from-file"

    def test_custom_provider_requires_server_endpoint(self) -> None:
        with pytest.raises(ValidationError):
            CustomProviderConfig()


class TestEngineConfig:
    def test_names_lowercased(self) -> None:
        config = EngineConfig(providers={"GitHub": _native()})
        assert list(config.providers) == ["github"]
        assert config.provider("GITHUB") is config.providers["github"]
        assert config.custom_provider("github") is None

    def test_requires_a_provider(self) -> None:
        with pytest.raises(ValidationError, match="No provider specified"):
            EngineConfig(server_url="https://server.test")

    def test_custom_provider_lookup(self) -> None:
        config = EngineConfig(custom_providers={"Acme": {"server_endpoint": "/acme"}})
        assert config.custom_provider("acme").server_endpoint == "/acme"

    def test_timeout_positive(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig(global_timeout=0, providers={"github": _native()})
