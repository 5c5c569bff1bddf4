"""Carrying execution state across the provider redirect.

Before the user agent leaves for the provider, the client persists the
ledger and the result accumulator (and, in local-storage mode, the caller's
state envelope) into a :class:`StateStorage`.  When the provider sends the
user back, :meth:`RedirectBridge.restore` reads them, rebuilds a fresh
ledger and accumulator, and deletes the stored entries: every saved state is
consumed exactly once.

Stored values are ``base64(JSON)`` under fixed keys (see :data:`LEDGER_KEY`,
:data:`RESULTS_KEY` and :data:`STATE_KEY`).  Native providers that echo the
OAuth ``state`` parameter back instead round-trip the envelope through the
redirect URL itself with :func:`encode_url_state` / :func:`decode_url_state`.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, unquote

from oauthpipe.exceptions import BridgeError
from oauthpipe.models import Ledger

logger = logging.getLogger(__name__)

LEDGER_KEY = "fetch data before redirect: "
RESULTS_KEY = "values to return: "
STATE_KEY = "state"


# --- Encoding ---


def encode_stored(value: Any) -> str:
    """``base64(JSON(value))`` as text."""
    return base64.b64encode(json.dumps(value).encode("utf-8")).decode("ascii")


def decode_stored(text: str) -> Any:
    """Inverse of :func:`encode_stored`.

    Raises:
        BridgeError: If *text* is not base64-encoded JSON.
    """
    try:
        return json.loads(base64.b64decode(text.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError) as exc:
        raise BridgeError(f"Stored redirect state is corrupt: {exc}") from exc


def state_envelope(provider: str, user_state: Any = None) -> dict[str, Any]:
    """The ``{"auth": provider, "userState": ...}`` envelope sent as OAuth ``state``."""
    return {"auth": provider, "userState": user_state}


def encode_url_state(provider: str, user_state: Any = None) -> str:
    """JSON-encode then URI-encode the state envelope for a redirect URL."""
    return quote(json.dumps(state_envelope(provider, user_state)), safe="!~*'()")


def decode_url_state(text: str) -> dict[str, Any]:
    """Decode a ``state`` parameter produced by :func:`encode_url_state`.

    The value may arrive URI-encoded once (from the raw query) or already
    decoded by the caller; both are accepted.

    Raises:
        BridgeError: If the value is not a JSON object.
    """
    for candidate in (unquote(text), text):
        try:
            state = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(state, dict):
            return state
    raise BridgeError(f"Redirect state parameter is not a JSON object: {text!r}")


# --- Storage backends ---


class StateStorage(ABC):
    """Key/value store that survives the redirect (browser local storage, a file...)."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        """Return the stored text for *key*, or ``None``."""
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Delete *key*; missing keys are ignored."""
        ...


class MemoryStorage(StateStorage):
    """In-process storage, for single-process deployments and tests."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


class FileStorage(StateStorage):
    """Storage backed by one JSON document on disk.

    Every write replaces the document atomically so an interrupted write
    never leaves a half-written state file behind.

    Args:
        path: Location of the JSON document (created on first write).
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise BridgeError(f"Cannot read state file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise BridgeError(f"State file {self.path} does not hold a JSON object")
        return data

    def _save(self, items: dict[str, str]) -> None:
        _atomic_write(self.path, json.dumps(items, indent=2) + "\n")

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._save(items)

    def remove_item(self, key: str) -> None:
        items = self._load()
        if key in items:
            del items[key]
            self._save(items)


def _atomic_write(path: Path, data: str) -> None:
    """Write *data* to *path* through a temp file in the same directory plus rename."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as exc:
        raise BridgeError(f"Cannot write state file {path}: {exc}") from exc
    finally:
        if fd is not None:
            fd.close()
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)


# --- Bridge ---


class RedirectBridge:
    """Persist and recover ``(ledger, results)`` around a redirect.

    Args:
        storage: Where the encoded entries live.

    Example::

        bridge = RedirectBridge(MemoryStorage())
        bridge.save(ledger, {"token": "T"})
        # ... redirect ...
        ledger, results = bridge.restore()
    """

    def __init__(self, storage: StateStorage) -> None:
        self.storage = storage

    def save(self, ledger: Ledger, results: dict[str, Any], state: Optional[dict[str, Any]] = None) -> None:
        """Store the ledger, the result accumulator and optionally the state envelope."""
        self.storage.set_item(LEDGER_KEY, encode_stored(ledger.to_wire()))
        self.storage.set_item(RESULTS_KEY, encode_stored(results))
        if state is not None:
            self.save_state(state)
        logger.debug("Saved %d ledger entries before redirect", len(ledger))

    def restore(self) -> tuple[Ledger, dict[str, Any]]:
        """Read back what :meth:`save` stored and delete it.

        Returns:
            A fresh ``(ledger, results)`` pair.

        Raises:
            BridgeError: If nothing was saved (or it was already consumed).
        """
        raw_ledger = self.storage.get_item(LEDGER_KEY)
        raw_results = self.storage.get_item(RESULTS_KEY)
        if raw_ledger is None or raw_results is None:
            raise BridgeError(
                "No saved fetch data found for this redirect",
                "The before-redirect stage must run in this user agent first; saved state is single-use",
            )
        try:
            ledger = Ledger.from_wire(decode_stored(raw_ledger))
            results = dict(decode_stored(raw_results))
        finally:
            self.storage.remove_item(LEDGER_KEY)
            self.storage.remove_item(RESULTS_KEY)
        logger.debug("Restored %d ledger entries after redirect", len(ledger))
        return ledger, results

    def save_state(self, state: dict[str, Any]) -> None:
        self.storage.set_item(STATE_KEY, encode_stored(state))

    def has_state(self) -> bool:
        return self.storage.get_item(STATE_KEY) is not None

    def pop_state(self) -> Optional[dict[str, Any]]:
        """Return and delete the stored state envelope, or ``None`` if absent."""
        raw = self.storage.get_item(STATE_KEY)
        if raw is None:
            return None
        self.storage.remove_item(STATE_KEY)
        return decode_stored(raw)
