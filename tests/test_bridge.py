"""Tests for the redirect bridge and its storage backends."""

from __future__ import annotations

import json

import pytest

from conftest import record
from oauthpipe.bridge import (
    LEDGER_KEY,
    RESULTS_KEY,
    FileStorage,
    MemoryStorage,
    RedirectBridge,
    decode_stored,
    decode_url_state,
    encode_stored,
    encode_url_state,
    state_envelope,
)
from oauthpipe.exceptions import BridgeError
from oauthpipe.models import Ledger


@pytest.fixture(params=["memory", "file"])
def storage(request, tmp_path):
    if request.param == "memory":
        return MemoryStorage()
    return FileStorage(tmp_path / "state" / "oauth.json")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


class TestStoredEncoding:
    def test_base64_json(self) -> None:
        text = encode_stored({"a": [1, "x"]})
        assert "{" not in text
        assert decode_stored(text) == {"a": [1, "x"]}

    def test_corrupt_text(self) -> None:
        with pytest.raises(BridgeError, match="corrupt"):
            decode_stored("not base64 at all!")


class TestUrlState:
    def test_envelope(self) -> None:
        assert state_envelope("github", {"next": "/"}) == {"auth": "github", "userState": {"next": "/"}}

    def test_encoded_once(self) -> None:
        text = encode_url_state("github", "abc")
        assert "%7B%22auth%22" in text
        assert decode_url_state(text) == {"auth": "github", "userState": "abc"}

    def test_already_decoded(self) -> None:
        assert decode_url_state('{"auth": "x", "userState": null}') == {"auth": "x", "userState": None}

    def test_not_an_object(self) -> None:
        with pytest.raises(BridgeError, match="not a JSON object"):
            decode_url_state("plain")


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class TestStorage:
    def test_set_get_remove(self, storage) -> None:
        assert storage.get_item("k") is None
        storage.set_item("k", "v")
        assert storage.get_item("k") == "v"
        storage.remove_item("k")
        assert storage.get_item("k") is None

    def test_remove_missing_is_ignored(self, storage) -> None:
        storage.remove_item("missing")

    def test_file_storage_writes_json_document(self, tmp_path) -> None:
        path = tmp_path / "oauth.json"
        FileStorage(path).set_item("k", "v")
        assert json.loads(path.read_text()) == {"k": "v"}
        assert [p.name for p in tmp_path.iterdir()] == ["oauth.json"]

    def test_file_storage_rejects_non_object(self, tmp_path) -> None:
        path = tmp_path / "oauth.json"
        path.write_text("[1, 2]")
        with pytest.raises(BridgeError, match="does not hold a JSON object"):
            FileStorage(path).get_item("k")


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


class TestRedirectBridge:
    def test_round_trip(self, storage, token_ledger) -> None:
        bridge = RedirectBridge(storage)
        bridge.save(token_ledger, {"nonce": "N"})

        ledger, results = bridge.restore()

        assert list(ledger) == ["step1"]
        assert ledger["step1"] == token_ledger["step1"]
        assert results == {"nonce": "N"}

    def test_restore_is_single_use(self, storage, token_ledger) -> None:
        bridge = RedirectBridge(storage)
        bridge.save(token_ledger, {})
        bridge.restore()
        assert storage.get_item(LEDGER_KEY) is None
        assert storage.get_item(RESULTS_KEY) is None
        with pytest.raises(BridgeError, match="No saved fetch data"):
            bridge.restore()

    def test_restore_returns_fresh_ledger(self, storage) -> None:
        original = Ledger()
        original.append("a", record({"x": 1}, method="GET", url="https://a.test/"))
        bridge = RedirectBridge(storage)
        bridge.save(original, {})
        restored, _ = bridge.restore()
        restored.append("b", record({}))
        assert list(original) == ["a"]

    def test_corrupt_entry_is_still_consumed(self, storage) -> None:
        storage.set_item(LEDGER_KEY, "%%%")
        storage.set_item(RESULTS_KEY, encode_stored({}))
        with pytest.raises(BridgeError):
            RedirectBridge(storage).restore()
        assert storage.get_item(LEDGER_KEY) is None

    def test_state_is_popped_once(self, storage) -> None:
        bridge = RedirectBridge(storage)
        bridge.save(Ledger(), {}, state={"auth": "acme", "userState": 1})
        assert bridge.has_state()
        assert bridge.pop_state() == {"auth": "acme", "userState": 1}
        assert not bridge.has_state()
        assert bridge.pop_state() is None
