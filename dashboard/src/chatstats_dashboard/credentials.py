from __future__ import annotations

"""Credential service contract and its JSON-over-HTTP client."""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx

from .errors import CredentialError, ErrorKind, classify_status
from .identity import IdentityCache
from .security import is_encrypted_placeholder


COOKIE_NAME = "userId"


class KeyState(str, Enum):
    ABSENT = "absent"
    PLAINTEXT = "plaintext"
    ENCRYPTED = "encrypted"


@dataclass(frozen=True)
class ServerKey:
    """What the server discloses about an account's secret key."""

    state: KeyState
    value: str | None = None

    @classmethod
    def absent(cls) -> "ServerKey":
        return cls(KeyState.ABSENT)

    @classmethod
    def encrypted(cls) -> "ServerKey":
        return cls(KeyState.ENCRYPTED)

    @classmethod
    def plaintext(cls, value: str) -> "ServerKey":
        return cls(KeyState.PLAINTEXT, value)

    @classmethod
    def from_wire(cls, value: Any) -> "ServerKey":
        # A blank value carries no usable key.
        if not isinstance(value, str) or not value.strip():
            return cls.absent()
        if is_encrypted_placeholder(value):
            return cls.encrypted()
        return cls.plaintext(value)

    @property
    def exists(self) -> bool:
        return self.state is not KeyState.ABSENT


@dataclass(frozen=True)
class Verdict:
    valid: bool
    message: str = ""


@dataclass(frozen=True)
class CurrentUser:
    user_id: str | None
    user_name: str | None = None
    role: str | None = None
    is_admin: bool = False


class CredentialService(Protocol):
    async def current_user(self, account_id: str | None = None, token: str | None = None) -> CurrentUser: ...

    async def fetch_key(self, account_id: str) -> ServerKey: ...

    async def save_key(
        self,
        account_id: str,
        key: str,
        *,
        old_key: str | None = None,
        verification_code: str | None = None,
    ) -> None: ...

    async def validate_key(self, account_id: str, key: str) -> Verdict: ...

    async def send_code(self, account_id: str) -> None: ...

    async def verify_code(self, account_id: str, code: str) -> Verdict: ...


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        for field in ("message", "detail"):
            value = payload.get(field)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


class HttpCredentialService:
    """Async client for the key server that keeps its cookie in the identity cache."""

    def __init__(
        self,
        api_base: str,
        *,
        identity: IdentityCache | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.identity = identity
        self._client = httpx.AsyncClient(base_url=self.api_base, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "HttpCredentialService":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Chatstats-Trace-Id": f"dashboard:{uuid.uuid4()}",
        }
        cookie = self.identity.cookie if self.identity is not None else None
        if cookie:
            headers["Cookie"] = f"{COOKIE_NAME}={cookie}"
        return headers

    def _remember_cookie(self, response: httpx.Response) -> None:
        value = response.cookies.get(COOKIE_NAME)
        self._client.cookies.clear()
        if value and self.identity is not None:
            self.identity.set_cookie(value)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> tuple[Any, str]:
        try:
            response = await self._client.request(method, path, params=params, json=body, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise CredentialError(ErrorKind.TRANSIENT, "Request timed out.") from exc
        except httpx.TransportError as exc:
            raise CredentialError(ErrorKind.TRANSIENT, f"Request failed: {exc}") from exc

        self._remember_cookie(response)
        if response.status_code >= 400:
            raise CredentialError(
                classify_status(response.status_code),
                _error_message(response),
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialError(ErrorKind.TRANSIENT, "Response was not valid JSON.") from exc

        if isinstance(payload, dict) and "success" in payload:
            message = payload.get("message") or ""
            if not payload.get("success"):
                raise CredentialError(ErrorKind.INPUT, message or "Request rejected.", status_code=response.status_code)
            return payload.get("data"), message
        return payload, ""

    async def current_user(self, account_id: str | None = None, token: str | None = None) -> CurrentUser:
        params: dict[str, Any] = {}
        if account_id:
            params["userId"] = account_id
        if token:
            params["token"] = token
        data, _ = await self._request("GET", "/api/current-user", params=params or None)
        data = data if isinstance(data, dict) else {}
        user_id = data.get("userId")
        return CurrentUser(
            user_id=str(user_id) if user_id else None,
            user_name=data.get("userName") or None,
            role=data.get("role") or None,
            is_admin=bool(data.get("isAdmin")),
        )

    async def fetch_key(self, account_id: str) -> ServerKey:
        try:
            data, _ = await self._request("GET", f"/api/secret-key/{account_id}")
        except CredentialError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                return ServerKey.absent()
            raise
        value = data.get("secretKey") if isinstance(data, dict) else None
        return ServerKey.from_wire(value)

    async def save_key(
        self,
        account_id: str,
        key: str,
        *,
        old_key: str | None = None,
        verification_code: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"userId": account_id, "secretKey": key}
        if old_key:
            body["oldSecretKey"] = old_key
        if verification_code:
            body["verificationCode"] = verification_code
        await self._request("POST", "/api/save-secret-key", body=body)

    async def validate_key(self, account_id: str, key: str) -> Verdict:
        data, message = await self._request(
            "POST",
            "/api/validate-secret-key",
            body={"userId": account_id, "secretKey": key},
        )
        valid = bool(data.get("valid")) if isinstance(data, dict) else False
        return Verdict(valid=valid, message=message)

    async def send_code(self, account_id: str) -> None:
        await self._request("POST", "/api/send-verification-code", body={"userId": account_id})

    async def verify_code(self, account_id: str, code: str) -> Verdict:
        data, message = await self._request("POST", "/api/verify-code", body={"userId": account_id, "code": code})
        valid = bool(data.get("valid")) if isinstance(data, dict) else False
        return Verdict(valid=valid, message=message)
