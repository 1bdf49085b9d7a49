from __future__ import annotations

"""Persistent account identity: account id, local secret key, cookie, display names."""

from pathlib import Path
from typing import Any

from .security import is_valid_account_id
from .storage import load_json, save_json


STATE_SCHEMA_VERSION = "0.1"


def _empty_state() -> dict[str, Any]:
    return {
        "state_schema_version": STATE_SCHEMA_VERSION,
        "account_id": None,
        "secret_key": None,
        "cookie": None,
        "display_names": {},
    }


class IdentityCache:
    """Browser-profile style store backed by one JSON file.

    The secret key is kept in plaintext; it is a convenience credential, not a
    cryptographic secret.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, Any]:
        data = load_json(self.path, _empty_state())
        if not isinstance(data, dict):
            return _empty_state()
        data.setdefault("state_schema_version", STATE_SCHEMA_VERSION)
        if not isinstance(data.get("display_names"), dict):
            data["display_names"] = {}
        return data

    def _save(self, data: dict[str, Any]) -> None:
        save_json(self.path, data)

    @property
    def account_id(self) -> str | None:
        value = self._load().get("account_id")
        return value if isinstance(value, str) and value else None

    def set_account_id(self, account_id: str) -> None:
        account_id = account_id.strip()
        if not is_valid_account_id(account_id):
            raise ValueError("account_id must be numeric.")
        data = self._load()
        data["account_id"] = account_id
        self._save(data)

    @property
    def secret_key(self) -> str | None:
        value = self._load().get("secret_key")
        if isinstance(value, str) and value.strip():
            return value
        return None

    def set_secret_key(self, secret_key: str) -> None:
        if not secret_key or not secret_key.strip():
            raise ValueError("secret_key must not be empty.")
        data = self._load()
        data["secret_key"] = secret_key
        self._save(data)

    def clear_secret_key(self) -> None:
        data = self._load()
        data["secret_key"] = None
        self._save(data)

    @property
    def cookie(self) -> str | None:
        value = self._load().get("cookie")
        return value if isinstance(value, str) and value else None

    def set_cookie(self, cookie: str | None) -> None:
        data = self._load()
        data["cookie"] = cookie or None
        self._save(data)

    def display_name(self, account_id: str) -> str | None:
        value = self._load()["display_names"].get(account_id)
        return value if isinstance(value, str) and value else None

    def set_display_name(self, account_id: str, name: str) -> None:
        data = self._load()
        data["display_names"][account_id] = name
        self._save(data)

    def clear_identity(self) -> None:
        """Forget account id, local key and cookie. Display names are kept."""

        data = self._load()
        data["account_id"] = None
        data["secret_key"] = None
        data["cookie"] = None
        self._save(data)

    def snapshot(self) -> dict[str, Any]:
        data = self._load()
        return {
            "account_id": data.get("account_id"),
            "has_secret_key": self.secret_key is not None,
            "has_cookie": bool(data.get("cookie")),
        }
