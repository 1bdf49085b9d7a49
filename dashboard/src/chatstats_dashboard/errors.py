from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    AUTH = "auth"
    TRANSIENT = "transient"
    INPUT = "input"


class CredentialError(Exception):
    """Classified failure from the credential service or local input checks."""

    def __init__(self, kind: ErrorKind, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def is_auth(self) -> bool:
        return self.kind is ErrorKind.AUTH

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        return payload


def classify_status(status_code: int) -> ErrorKind:
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code in (400, 422):
        return ErrorKind.INPUT
    return ErrorKind.TRANSIENT
