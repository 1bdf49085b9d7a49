from __future__ import annotations

import re
from typing import Any


ENCRYPTED_PLACEHOLDER_DEFAULT = "***已加密***"
ENCRYPTED_PLACEHOLDERS = frozenset({"***encrypted***", ENCRYPTED_PLACEHOLDER_DEFAULT, "***已加密存储***"})

SECRET_VALUE_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\b[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\b"),  # JWT-like
    re.compile(r"\b(?:Bearer|Token)\s+[A-Za-z0-9\-_\.]{16,}\b", re.IGNORECASE),
    re.compile(
        r"\b(?=[A-Za-z0-9+/=]{40,}\b)(?=[A-Za-z0-9+/=]*[A-Z])(?=[A-Za-z0-9+/=]*[a-z])(?=[A-Za-z0-9+/=]*\d)[A-Za-z0-9+/=]{40,}\b"
    ),  # high-entropy token/base64-like
]

# Field names whose values are credentials no matter what they look like.
SECRET_FIELD_NAMES = frozenset(
    {
        "secret_key",
        "secretkey",
        "old_secret_key",
        "oldsecretkey",
        "key",
        "code",
        "verification_code",
        "verificationcode",
        "token",
        "cookie",
        "password",
    }
)

PII_PATTERNS = [
    re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w{2,}\b"),  # email
    re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),  # IPv4
]

ACCOUNT_ID_PATTERN = re.compile(r"^\d{1,20}$")


def is_secret_like_text(text: str) -> bool:
    for pattern in SECRET_VALUE_PATTERNS:
        if pattern.search(text):
            return True
    return False


def is_secret_field(name: Any) -> bool:
    if not isinstance(name, str):
        return False
    return name.strip().lower().replace("-", "_") in SECRET_FIELD_NAMES


def payload_contains_secrets(payload: Any) -> bool:
    if isinstance(payload, str):
        return is_secret_like_text(payload)
    if isinstance(payload, list):
        return any(payload_contains_secrets(item) for item in payload)
    if isinstance(payload, dict):
        return any(is_secret_field(key) or payload_contains_secrets(value) for key, value in payload.items())
    return False


def payload_contains_pii(payload: Any) -> bool:
    if isinstance(payload, str):
        for pattern in PII_PATTERNS:
            if pattern.search(payload):
                return True
        return False
    if isinstance(payload, list):
        return any(payload_contains_pii(item) for item in payload)
    if isinstance(payload, dict):
        return any(payload_contains_pii(value) for value in payload.values())
    return False


def is_encrypted_placeholder(value: str | None) -> bool:
    if not isinstance(value, str):
        return False
    return value.strip() in ENCRYPTED_PLACEHOLDERS


def is_valid_account_id(value: Any) -> bool:
    return isinstance(value, str) and bool(ACCOUNT_ID_PATTERN.match(value.strip()))


def mask_secret_key(key: str | None) -> str:
    """Show the first and last four characters of a key, or only stars for short keys."""

    if not key or len(key) <= 8:
        return "****"
    return f"{key[:4]}****{key[-4:]}"
