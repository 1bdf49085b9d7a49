from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from chatstats_dashboard.config import DashboardConfig
from chatstats_dashboard.credentials import CurrentUser, ServerKey, Verdict
from chatstats_dashboard.errors import CredentialError, ErrorKind
from chatstats_dashboard.identity import IdentityCache
from chatstats_dashboard.prompts import Cancel, DialogView, UserAction
from chatstats_dashboard.session import SessionTrustCache
from chatstats_dashboard.telemetry import TelemetryLogger


class ManualClock:
    def __init__(self, start: float = 1_770_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCredentialService:
    """In-memory stand-in for the key server with call recording and injectable failures."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.states: dict[str, ServerKey] = {}
        self.secrets: dict[str, str] = {}
        self.users: dict[str, CurrentUser] = {}
        self.tokens: dict[str, str] = {}
        self.failures: dict[str, CredentialError] = {}
        self.calls: list[tuple[str, str]] = []
        self.saves: list[dict[str, Any]] = []
        self.codes: dict[str, tuple[str, float]] = {}
        self.sent_codes: list[str] = []
        self.granted: dict[str, float] = {}
        self.next_code = "123456"

    def set_plaintext(self, account_id: str, key: str) -> None:
        self.states[account_id] = ServerKey.plaintext(key)
        self.secrets[account_id] = key

    def set_encrypted(self, account_id: str, key: str) -> None:
        self.states[account_id] = ServerKey.encrypted()
        self.secrets[account_id] = key

    def fail(self, operation: str, kind: ErrorKind = ErrorKind.TRANSIENT, message: str = "boom") -> None:
        self.failures[operation] = CredentialError(kind, message)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _enter(self, operation: str, account_id: str) -> None:
        self.calls.append((operation, account_id))
        error = self.failures.get(operation)
        if error is not None:
            raise error

    def _consume_grant(self, account_id: str) -> bool:
        granted_at = self.granted.pop(account_id, None)
        return granted_at is not None and self.clock() - granted_at <= 60

    async def current_user(self, account_id: str | None = None, token: str | None = None) -> CurrentUser:
        self._enter("current_user", account_id or "")
        if token and token in self.tokens:
            resolved = self.tokens[token]
            return self.users.get(resolved, CurrentUser(user_id=resolved))
        if account_id:
            return self.users.get(account_id, CurrentUser(user_id=account_id))
        return CurrentUser(user_id=None)

    async def fetch_key(self, account_id: str) -> ServerKey:
        self._enter("fetch_key", account_id)
        return self.states.get(account_id, ServerKey.absent())

    async def save_key(
        self,
        account_id: str,
        key: str,
        *,
        old_key: str | None = None,
        verification_code: str | None = None,
    ) -> None:
        self._enter("save_key", account_id)
        if account_id in self.secrets:
            allowed = old_key == self.secrets[account_id] or (
                verification_code is not None and self._consume_grant(account_id)
            )
            if not allowed:
                raise CredentialError(ErrorKind.INPUT, "Old secret key verification failed.", status_code=400)
        self.saves.append({"account_id": account_id, "key": key, "old_key": old_key, "code": verification_code})
        self.set_encrypted(account_id, key)

    async def validate_key(self, account_id: str, key: str) -> Verdict:
        self._enter("validate_key", account_id)
        if account_id not in self.secrets:
            return Verdict(False, "Secret key does not exist for this user.")
        if self.secrets[account_id] == key:
            return Verdict(True, "Secret key verified.")
        return Verdict(False, "Secret key verification failed.")

    async def send_code(self, account_id: str) -> None:
        self._enter("send_code", account_id)
        self.codes[account_id] = (self.next_code, self.clock())
        self.sent_codes.append(self.next_code)

    async def verify_code(self, account_id: str, code: str) -> Verdict:
        self._enter("verify_code", account_id)
        issued = self.codes.get(account_id)
        if issued is None:
            return Verdict(False, "Verification code does not exist or has expired.")
        value, issued_at = issued
        if self.clock() - issued_at > 60:
            del self.codes[account_id]
            return Verdict(False, "Verification code has expired.")
        if value != code:
            return Verdict(False, "Verification code is incorrect.")
        del self.codes[account_id]
        self.granted[account_id] = self.clock()
        return Verdict(True, "Verification code accepted.")


Step = UserAction | Callable[[DialogView], UserAction]


class ScriptedUI:
    """PromptUI that replays a fixed list of actions and records what it was shown."""

    def __init__(self, actions: list[Step] | None = None) -> None:
        self.actions: list[Step] = list(actions or [])
        self.views: list[DialogView] = []
        self.updates: list[DialogView] = []
        self.notifications: list[tuple[str, str]] = []
        self.closed = 0

    def script(self, *actions: Step) -> "ScriptedUI":
        self.actions.extend(actions)
        return self

    async def next_action(self, view: DialogView) -> UserAction:
        self.views.append(view)
        if not self.actions:
            return Cancel()
        step = self.actions.pop(0)
        if callable(step):
            return step(view)
        return step

    def update(self, view: DialogView) -> None:
        self.updates.append(view)

    def close(self) -> None:
        self.closed += 1

    def notify(self, message: str, level: str = "info") -> None:
        self.notifications.append((level, message))

    @property
    def states(self) -> list[str]:
        return [view.state.value for view in self.views]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config() -> DashboardConfig:
    return DashboardConfig()


@pytest.fixture
def identity(tmp_path: Path) -> IdentityCache:
    return IdentityCache(tmp_path / "state" / "identity.json")


@pytest.fixture
def trust(clock: ManualClock) -> SessionTrustCache:
    return SessionTrustCache(clock=clock)


@pytest.fixture
def credentials(clock: ManualClock) -> FakeCredentialService:
    return FakeCredentialService(clock)


@pytest.fixture
def ui() -> ScriptedUI:
    return ScriptedUI()


@pytest.fixture
def telemetry(tmp_path: Path) -> TelemetryLogger:
    return TelemetryLogger(tmp_path / "telemetry" / "events.jsonl")
