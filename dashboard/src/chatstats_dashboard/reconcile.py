from __future__ import annotations

"""Decide whether the locally cached secret key can be trusted against the server record."""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from .config import DashboardConfig
from .credentials import CredentialService, KeyState
from .errors import CredentialError
from .identity import IdentityCache
from .session import SessionTrustCache
from .telemetry import TelemetryLogger


T = TypeVar("T")


class EntryMode(str, Enum):
    NORMAL = "normal"
    TOKEN_LINK = "token-link"


class Outcome(str, Enum):
    TRUST = "trust"
    REGISTER = "register"
    CONFIRM_TOKEN = "confirm_token"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: Outcome
    message: str | None = None
    server_key: str | None = None
    reason: str = ""
    error: dict[str, Any] | None = None


@dataclass(frozen=True)
class InFlightToken:
    account_id: str
    mode: EntryMode
    token_id: str


class ReconcileContext:
    """Holds the single in-flight reconciliation token for the process."""

    def __init__(self) -> None:
        self._in_flight: InFlightToken | None = None

    @property
    def in_flight(self) -> InFlightToken | None:
        return self._in_flight

    def acquire(self, account_id: str, mode: EntryMode) -> InFlightToken | None:
        if self._in_flight is not None:
            return None
        self._in_flight = InFlightToken(account_id=account_id, mode=mode, token_id=str(uuid.uuid4()))
        return self._in_flight

    def release(self, token: InFlightToken) -> None:
        if self._in_flight is not None and self._in_flight.token_id == token.token_id:
            self._in_flight = None


def mismatch_message(account_id: str, user_name: str | None, *, headline: str) -> str:
    lines = [headline, f"Account: {account_id}"]
    if user_name:
        lines.append(f"Name: {user_name}")
    lines.append("Please set your secret key again.")
    return "\n".join(lines)


class ReconciliationEngine:
    def __init__(
        self,
        identity: IdentityCache,
        trust: SessionTrustCache,
        credentials: CredentialService,
        *,
        config: DashboardConfig,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.identity = identity
        self.trust = trust
        self.credentials = credentials
        self.config = config
        self.telemetry = telemetry

    async def run(
        self,
        context: ReconcileContext,
        account_id: str,
        mode: EntryMode,
        handler: Callable[[ReconciliationResult], Awaitable[T]] | None = None,
    ) -> ReconciliationResult | None:
        """Evaluate once and hand the result to `handler` while holding the in-flight token.

        Returns None without doing anything when another reconciliation is running.
        """

        token = context.acquire(account_id, mode)
        if token is None:
            self._log("reconcile.skipped", account_id, {"mode": mode.value, "reason": "in_flight"})
            return None
        try:
            result = await self.evaluate(account_id, mode)
            data: dict[str, Any] = {"mode": mode.value, "outcome": result.outcome.value, "reason": result.reason}
            if result.error is not None:
                data["error"] = result.error
            self._log("reconcile.completed", account_id, data)
            if handler is not None:
                await handler(result)
            return result
        finally:
            context.release(token)

    async def evaluate(self, account_id: str, mode: EntryMode) -> ReconciliationResult:
        if mode is EntryMode.TOKEN_LINK:
            return await self._evaluate_token_link(account_id)
        return await self._evaluate_normal(account_id)

    async def _evaluate_token_link(self, account_id: str) -> ReconciliationResult:
        if self.trust.is_token_verified(account_id):
            return ReconciliationResult(Outcome.TRUST, reason="token_session_trusted")
        try:
            server_key = await self.credentials.fetch_key(account_id)
        except CredentialError:
            return ReconciliationResult(Outcome.CONFIRM_TOKEN, reason="server_state_unknown")
        if server_key.exists:
            return ReconciliationResult(Outcome.CONFIRM_TOKEN, reason="server_record_present")
        return ReconciliationResult(Outcome.REGISTER, reason="server_record_absent")

    async def _evaluate_normal(self, account_id: str) -> ReconciliationResult:
        local_key = self.identity.secret_key
        if local_key is None:
            return await self._evaluate_without_local_key(account_id)

        if self.trust.key_updated_at(account_id) is not None:
            if self.trust.within_trust_window(account_id, self.config.trust_window_seconds):
                self.trust.clear_feature("achievement", account_id)
                return ReconciliationResult(Outcome.TRUST, reason="trust_window")
            self.trust.clear_key_update(account_id)

        result = await self._compare_with_server(account_id, local_key)
        if result.outcome is Outcome.TRUST:
            self.trust.clear_key_update(account_id)
            self.trust.clear_feature("achievement", account_id)
        return result

    async def _evaluate_without_local_key(self, account_id: str) -> ReconciliationResult:
        try:
            server_key = await self.credentials.fetch_key(account_id)
        except CredentialError as exc:
            return ReconciliationResult(Outcome.TRUST, reason=f"fail_open_{exc.kind.value}", error=exc.to_dict())
        if server_key.state is KeyState.ABSENT:
            return ReconciliationResult(Outcome.REGISTER, reason="both_absent")
        if server_key.state is KeyState.PLAINTEXT and server_key.value and server_key.value.strip():
            self.identity.set_secret_key(server_key.value)
            return ReconciliationResult(Outcome.TRUST, reason="adopted_server_key")
        return ReconciliationResult(Outcome.TRUST, reason="server_holds_encrypted_key")

    async def _compare_with_server(self, account_id: str, local_key: str) -> ReconciliationResult:
        user_name = self.identity.display_name(account_id)
        try:
            server_key = await self.credentials.fetch_key(account_id)
        except CredentialError as exc:
            return ReconciliationResult(Outcome.TRUST, reason=f"fail_open_{exc.kind.value}", error=exc.to_dict())

        if server_key.state is KeyState.ABSENT:
            return ReconciliationResult(Outcome.TRUST, reason="server_record_absent")

        if server_key.state is KeyState.ENCRYPTED:
            try:
                verdict = await self.credentials.validate_key(account_id, local_key)
            except CredentialError as exc:
                if exc.is_auth:
                    return ReconciliationResult(
                        Outcome.MISMATCH,
                        message=mismatch_message(account_id, user_name, headline="Local secret key was rejected."),
                        reason="validate_rejected",
                    )
                return ReconciliationResult(Outcome.TRUST, reason=f"fail_open_{exc.kind.value}", error=exc.to_dict())
            if verdict.valid:
                return ReconciliationResult(Outcome.TRUST, reason="validated")
            return ReconciliationResult(
                Outcome.MISMATCH,
                message=mismatch_message(
                    account_id, user_name, headline="Local secret key does not match the server."
                ),
                reason="validate_invalid",
            )

        server_value = server_key.value or ""
        if local_key.strip() == server_value.strip():
            return ReconciliationResult(Outcome.TRUST, reason="keys_match")
        return ReconciliationResult(
            Outcome.MISMATCH,
            message=mismatch_message(account_id, user_name, headline="Local secret key does not match the server."),
            server_key=server_value,
            reason="keys_differ",
        )

    def _log(self, event_type: str, account_id: str, data: dict) -> None:
        if self.telemetry is None:
            return
        self.telemetry.log_event(event_type, actor="system", actor_id=account_id, data=data)
