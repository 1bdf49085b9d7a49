from __future__ import annotations

"""Secret key records in `<data>/key.json`, hashed with PBKDF2-SHA512."""

import hashlib
import hmac
import secrets
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from chatstats_dashboard.security import ENCRYPTED_PLACEHOLDER_DEFAULT, is_valid_account_id
from chatstats_dashboard.storage import load_json, save_json


PBKDF2_ITERATIONS = 1000
PBKDF2_KEY_BYTES = 64
SALT_BYTES = 16
MIN_SERVER_KEY_LENGTH = 3
VALID_ROLES = {"admin", "user"}


def hash_secret(secret: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac(
        "sha512",
        secret.encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ITERATIONS,
        dklen=PBKDF2_KEY_BYTES,
    )
    return digest.hex()


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _is_hashed(entry: dict[str, Any]) -> bool:
    return isinstance(entry.get("hash"), str) and isinstance(entry.get("salt"), str)


class KeyStore:
    """JSON-file key store keyed by account id.

    Entries are either `{hash, salt, role, createdAt, updatedAt}` or a legacy
    `{originalKey}` plaintext record. Any save upgrades to the hashed form.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, Any]:
        data = load_json(self.path, {})
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        save_json(self.path, data)

    def entry(self, account_id: str) -> dict[str, Any] | None:
        value = self._load().get(account_id)
        return value if isinstance(value, dict) else None

    def has_key(self, account_id: str) -> bool:
        entry = self.entry(account_id)
        if entry is None:
            return False
        return _is_hashed(entry) or bool(entry.get("originalKey"))

    def public_value(self, account_id: str) -> str | None:
        """What GET /api/secret-key discloses: the placeholder, a legacy plaintext, or None."""

        entry = self.entry(account_id)
        if entry is None:
            return None
        if _is_hashed(entry):
            return ENCRYPTED_PLACEHOLDER_DEFAULT
        legacy = entry.get("originalKey")
        return legacy if isinstance(legacy, str) and legacy else None

    def matches(self, account_id: str, secret: str) -> bool:
        entry = self.entry(account_id)
        if entry is None:
            return False
        if _is_hashed(entry):
            return hmac.compare_digest(hash_secret(secret, entry["salt"]), entry["hash"])
        legacy = entry.get("originalKey")
        return isinstance(legacy, str) and bool(legacy) and hmac.compare_digest(legacy.strip(), secret.strip())

    def save(self, account_id: str, secret: str) -> dict[str, Any]:
        """Write a hashed record, keeping role and creation time of any existing entry."""

        if not is_valid_account_id(account_id):
            raise ValueError("userId must be numeric.")
        if not secret or len(secret) < MIN_SERVER_KEY_LENGTH:
            raise ValueError(f"Secret key must be at least {MIN_SERVER_KEY_LENGTH} characters.")
        data = self._load()
        existing = data.get(account_id) if isinstance(data.get(account_id), dict) else {}
        salt = secrets.token_hex(SALT_BYTES)
        now = _now_iso()
        record = {
            "hash": hash_secret(secret, salt),
            "salt": salt,
            "role": existing.get("role") or "user",
            "createdAt": existing.get("createdAt") or now,
            "updatedAt": now,
        }
        if existing.get("userName"):
            record["userName"] = existing["userName"]
        data[account_id] = record
        self._save(data)
        return record

    def role(self, account_id: str) -> str | None:
        entry = self.entry(account_id)
        if entry is None:
            return None
        role = entry.get("role")
        return role if role in VALID_ROLES else "user"

    def set_role(self, account_id: str, role: str) -> None:
        if role not in VALID_ROLES:
            raise ValueError("role must be admin or user.")
        data = self._load()
        entry = data.get(account_id)
        if not isinstance(entry, dict):
            raise KeyError(f"Unknown account: {account_id}")
        entry["role"] = role
        entry["updatedAt"] = _now_iso()
        self._save(data)

    def user_name(self, account_id: str) -> str | None:
        entry = self.entry(account_id)
        name = entry.get("userName") if entry else None
        return name if isinstance(name, str) and name else None

    def set_user_name(self, account_id: str, name: str) -> None:
        if not is_valid_account_id(account_id):
            raise ValueError("userId must be numeric.")
        data = self._load()
        entry = data.setdefault(account_id, {})
        entry["userName"] = name.strip()
        self._save(data)
