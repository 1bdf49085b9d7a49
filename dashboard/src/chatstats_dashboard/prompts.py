from __future__ import annotations

"""Dialog-driven state machine for registering, confirming, repairing and resetting secret keys."""

import asyncio
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Protocol, Union

from .config import DashboardConfig
from .credentials import CredentialService
from .errors import CredentialError
from .identity import IdentityCache
from .reconcile import Outcome, ReconciliationResult
from .session import FEATURES, Clock, SessionTrustCache
from .telemetry import TelemetryLogger


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_REGISTER = "awaiting_register"
    AWAITING_CONFIRM = "awaiting_confirm"
    AWAITING_MISMATCH_KEY = "awaiting_mismatch_key"
    AWAITING_CODE = "awaiting_code"
    AWAITING_NEW_KEY = "awaiting_new_key"
    RESOLVED = "resolved"
    ESCAPED = "escaped"


TERMINAL_STATES = frozenset({FlowState.IDLE, FlowState.RESOLVED, FlowState.ESCAPED})

TITLES = {
    FlowState.AWAITING_REGISTER: "Set secret key",
    FlowState.AWAITING_CONFIRM: "Confirm your identity",
    FlowState.AWAITING_MISMATCH_KEY: "Secret key mismatch",
    FlowState.AWAITING_CODE: "Verify with a one-time code",
    FlowState.AWAITING_NEW_KEY: "Choose a new secret key",
}


@dataclass(frozen=True)
class Submit:
    value: str


@dataclass(frozen=True)
class RequestCode:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class NotMyAccount:
    pass


UserAction = Union[Submit, RequestCode, Cancel, NotMyAccount]


@dataclass(frozen=True)
class DialogView:
    """Everything a dialog needs to render the current step."""

    state: FlowState
    title: str
    account_id: str
    user_name: str | None = None
    message: str | None = None
    hint: str | None = None
    error: str | None = None
    submit_enabled: bool = True
    can_request_code: bool = False
    countdown: int = 0


class PromptUI(Protocol):
    async def next_action(self, view: DialogView) -> UserAction: ...

    def update(self, view: DialogView) -> None: ...

    def close(self) -> None: ...

    def notify(self, message: str, level: str = "info") -> None: ...


@dataclass(frozen=True)
class FlowResult:
    state: FlowState
    key: str | None = None
    message: str | None = None

    @property
    def resolved(self) -> bool:
        return self.state is FlowState.RESOLVED

    @property
    def escaped(self) -> bool:
        return self.state is FlowState.ESCAPED


class ResendCooldown:
    """Client-side resend guard for one-time codes."""

    def __init__(self, seconds: int, clock: Clock = time.time) -> None:
        self.seconds = seconds
        self._clock = clock
        self.issued_at: float | None = None

    def start(self) -> None:
        self.issued_at = self._clock()

    def remaining(self) -> int:
        if self.issued_at is None:
            return 0
        left = self.seconds - (self._clock() - self.issued_at)
        return max(0, math.ceil(left))

    @property
    def active(self) -> bool:
        return self.remaining() > 0


class CountdownTicker:
    """Calls `on_tick` with the seconds left once per second until the cooldown ends."""

    def __init__(self, cooldown: ResendCooldown, on_tick: Callable[[int], None], interval: float = 1.0) -> None:
        self.cooldown = cooldown
        self.on_tick = on_tick
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            left = self.cooldown.remaining()
            self.on_tick(left)
            if left <= 0:
                return

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


@dataclass
class _Flow:
    account_id: str
    state: FlowState
    cooldown: ResendCooldown
    purpose: str = "reset"
    user_name: str | None = None
    message: str | None = None
    hint: str | None = None
    error: str | None = None
    busy: bool = False
    key: str | None = None
    verified_code: str | None = None
    ticker: CountdownTicker | None = field(default=None, repr=False)

    def view(self) -> DialogView:
        countdown = self.cooldown.remaining() if self.state is FlowState.AWAITING_CODE else 0
        return DialogView(
            state=self.state,
            title=TITLES.get(self.state, ""),
            account_id=self.account_id,
            user_name=self.user_name,
            message=self.message,
            hint=self.hint,
            error=self.error,
            submit_enabled=not self.busy,
            can_request_code=self.state is FlowState.AWAITING_CODE and not self.busy and countdown == 0,
            countdown=countdown,
        )

    def stop_countdown(self) -> None:
        if self.ticker is not None:
            self.ticker.cancel()
            self.ticker = None


class PromptFlowController:
    def __init__(
        self,
        identity: IdentityCache,
        trust: SessionTrustCache,
        credentials: CredentialService,
        ui: PromptUI,
        *,
        config: DashboardConfig,
        telemetry: TelemetryLogger | None = None,
        clock: Clock = time.time,
    ) -> None:
        self.identity = identity
        self.trust = trust
        self.credentials = credentials
        self.ui = ui
        self.config = config
        self.telemetry = telemetry
        self.clock = clock
        self._handlers: dict[FlowState, Callable[[_Flow, UserAction], Awaitable[None]]] = {
            FlowState.AWAITING_REGISTER: self._on_register,
            FlowState.AWAITING_CONFIRM: self._on_confirm,
            FlowState.AWAITING_MISMATCH_KEY: self._on_mismatch_key,
            FlowState.AWAITING_CODE: self._on_code,
            FlowState.AWAITING_NEW_KEY: self._on_new_key,
        }

    # Entry points

    async def resolve_outcome(self, account_id: str, result: ReconciliationResult) -> FlowResult:
        """Run the dialog matching a reconciliation outcome. Trust shows nothing."""

        if result.outcome is Outcome.REGISTER:
            return await self.register(account_id)
        if result.outcome is Outcome.CONFIRM_TOKEN:
            return await self.confirm_token(account_id)
        if result.outcome is Outcome.MISMATCH:
            return await self.resolve_mismatch(account_id, result.message)
        return FlowResult(FlowState.RESOLVED, key=self.identity.secret_key)

    async def register(self, account_id: str) -> FlowResult:
        return await self._drive(self._new_flow(account_id, FlowState.AWAITING_REGISTER))

    async def confirm_token(self, account_id: str) -> FlowResult:
        flow = self._new_flow(account_id, FlowState.AWAITING_CONFIRM)
        flow.message = "You opened the dashboard from a link. Enter your secret key to confirm this is your account."
        return await self._drive(flow)

    async def resolve_mismatch(self, account_id: str, message: str | None = None) -> FlowResult:
        flow = self._new_flow(account_id, FlowState.AWAITING_MISMATCH_KEY)
        flow.message = message or "Your local secret key does not match the server. Enter the correct key."
        return await self._drive(flow)

    async def reset(self, account_id: str) -> FlowResult:
        flow = self._new_flow(account_id, FlowState.AWAITING_CODE)
        flow.hint = "A one-time code will be sent to you by the chat bot."
        return await self._drive(flow)

    async def change_key(self, account_id: str) -> FlowResult:
        if self.identity.secret_key is None:
            return await self.register(account_id)
        return await self.reset(account_id)

    async def clear_local_key(self, account_id: str) -> FlowResult:
        flow = self._new_flow(account_id, FlowState.AWAITING_CODE, purpose="clear")
        flow.hint = "Verify with a one-time code to remove the key stored on this device."
        return await self._drive(flow)

    # Driver

    def _new_flow(self, account_id: str, state: FlowState, *, purpose: str = "reset") -> _Flow:
        return _Flow(
            account_id=account_id,
            state=state,
            purpose=purpose,
            cooldown=ResendCooldown(self.config.resend_cooldown_seconds, clock=self.clock),
            user_name=self.identity.display_name(account_id),
        )

    async def _drive(self, flow: _Flow) -> FlowResult:
        start_state = flow.state
        try:
            while flow.state not in TERMINAL_STATES:
                action = await self.ui.next_action(flow.view())
                if isinstance(action, NotMyAccount):
                    self._escape(flow)
                elif isinstance(action, Cancel):
                    flow.state = FlowState.IDLE
                else:
                    await self._handlers[flow.state](flow, action)
        finally:
            flow.stop_countdown()
            self.ui.close()
        if self.telemetry is not None:
            self.telemetry.log_event(
                "prompt.resolved",
                actor_id=flow.account_id,
                data={"entry_state": start_state.value, "final_state": flow.state.value, "purpose": flow.purpose},
            )
        return FlowResult(flow.state, key=flow.key, message=flow.error)

    def _fail(self, flow: _Flow, message: str) -> None:
        flow.error = message
        flow.busy = False
        self.ui.notify(message, "error")

    def _begin_call(self, flow: _Flow) -> None:
        flow.error = None
        flow.busy = True
        self.ui.update(flow.view())

    def _escape(self, flow: _Flow) -> None:
        self.identity.clear_identity()
        self.trust.clear_account(flow.account_id)
        flow.state = FlowState.ESCAPED
        flow.key = None
        if self.telemetry is not None:
            self.telemetry.log_event("identity.cleared", actor_id=flow.account_id, data={"reason": "not_my_account"})
        self.ui.notify("Signed out. Enter your own account id to continue.", "info")

    async def _persist(self, flow: _Flow, key: str, **save_kwargs: str | None) -> CredentialError | None:
        """Save remotely then locally. Returns the failure, already shown in the dialog."""

        try:
            await self.credentials.save_key(flow.account_id, key, **save_kwargs)
        except CredentialError as exc:
            self._fail(flow, f"Failed to save the secret key: {exc.message or 'unknown error'}")
            return exc
        self.identity.set_secret_key(key)
        if self.telemetry is not None:
            self.telemetry.log_event("key.saved", actor_id=flow.account_id, data={"purpose": flow.state.value})
        return None

    def _resolve(self, flow: _Flow, key: str | None, message: str) -> None:
        flow.busy = False
        flow.error = None
        flow.key = key
        flow.state = FlowState.RESOLVED
        self.ui.notify(message, "success")

    def _check_new_key(self, flow: _Flow, key: str) -> bool:
        if not key:
            self._fail(flow, "Please enter a secret key.")
            return False
        if len(key) < self.config.min_key_length:
            self._fail(flow, f"The secret key must be at least {self.config.min_key_length} characters.")
            return False
        return True

    # State handlers

    async def _on_register(self, flow: _Flow, action: UserAction) -> None:
        if not isinstance(action, Submit):
            return
        key = action.value.strip()
        if not self._check_new_key(flow, key):
            return
        self._begin_call(flow)
        if await self._persist(flow, key) is not None:
            return
        self.trust.stamp_key_update(flow.account_id)
        self.trust.mark_token_verified(flow.account_id)
        self._resolve(flow, key, "Secret key saved.")

    async def _on_confirm(self, flow: _Flow, action: UserAction) -> None:
        if not isinstance(action, Submit):
            return
        key = action.value.strip()
        if not key:
            self._fail(flow, "Please enter your secret key.")
            return
        self._begin_call(flow)
        try:
            verdict = await self.credentials.validate_key(flow.account_id, key)
        except CredentialError as exc:
            self._fail(flow, f"Verification failed: {exc.message or 'unknown error'}")
            return
        if not verdict.valid:
            self._fail(flow, verdict.message or "Secret key verification failed.")
            return
        if await self._persist(flow, key, old_key=key) is not None:
            return
        self.trust.mark_token_verified(flow.account_id)
        self._resolve(flow, key, "Identity confirmed.")

    async def _on_mismatch_key(self, flow: _Flow, action: UserAction) -> None:
        if not isinstance(action, Submit):
            return
        key = action.value.strip()
        if not key:
            self._fail(flow, "Please enter the correct secret key.")
            return
        self._begin_call(flow)
        try:
            verdict = await self.credentials.validate_key(flow.account_id, key)
        except CredentialError as exc:
            if not exc.is_auth:
                self._fail(flow, f"Verification failed: {exc.message or 'unknown error'}")
                return
            verdict = None
        if verdict is None or not verdict.valid:
            flow.busy = False
            flow.state = FlowState.AWAITING_CODE
            flow.message = None
            flow.hint = "That key is not correct. Verify with a one-time code to set a new one."
            self.ui.notify("Secret key is not correct. A one-time code is required to reset it.", "warning")
            return
        if await self._persist(flow, key, old_key=key) is not None:
            return
        self._after_key_change(flow.account_id)
        self._resolve(flow, key, "Secret key verified.")

    async def _on_code(self, flow: _Flow, action: UserAction) -> None:
        if isinstance(action, RequestCode):
            await self._request_code(flow)
            return
        if not isinstance(action, Submit):
            return
        code = action.value.strip()
        if not code:
            self._fail(flow, "Please enter the verification code.")
            return
        if len(code) != self.config.code_length or not code.isdigit():
            self._fail(flow, f"The verification code has {self.config.code_length} digits.")
            return
        self._begin_call(flow)
        try:
            verdict = await self.credentials.verify_code(flow.account_id, code)
        except CredentialError as exc:
            self._fail(flow, f"Code verification failed: {exc.message or 'unknown error'}")
            return
        if not verdict.valid:
            self._fail(flow, verdict.message or "Verification code is incorrect.")
            return
        flow.busy = False
        flow.verified_code = code
        flow.stop_countdown()
        if flow.purpose == "clear":
            self.identity.clear_secret_key()
            for feature in FEATURES:
                self.trust.clear_feature(feature, flow.account_id)
            self.trust.clear_token_verified(flow.account_id)
            self._resolve(flow, None, "Local secret key removed.")
            return
        flow.state = FlowState.AWAITING_NEW_KEY
        flow.hint = None

    async def _request_code(self, flow: _Flow) -> None:
        if flow.cooldown.active or flow.busy:
            self.ui.update(flow.view())
            return
        self._begin_call(flow)
        try:
            await self.credentials.send_code(flow.account_id)
        except CredentialError as exc:
            self._fail(flow, f"Failed to send the code: {exc.message or 'unknown error'}")
            return
        flow.busy = False
        flow.cooldown.start()
        flow.hint = "Code sent. Check your chat messages; it is valid for 1 minute."
        if self.telemetry is not None:
            self.telemetry.log_event("code.sent", actor_id=flow.account_id, data={"purpose": flow.purpose})
        self.ui.notify("Verification code sent.", "success")
        self._start_countdown(flow)

    def _start_countdown(self, flow: _Flow) -> None:
        flow.stop_countdown()
        flow.ticker = CountdownTicker(flow.cooldown, lambda _left: self.ui.update(flow.view()))
        flow.ticker.start()

    async def _on_new_key(self, flow: _Flow, action: UserAction) -> None:
        if not isinstance(action, Submit):
            return
        key = action.value.strip()
        if not self._check_new_key(flow, key):
            return
        self._begin_call(flow)
        failure = await self._persist(flow, key, verification_code=flow.verified_code)
        if failure is not None:
            if not failure.is_transient:
                self._back_to_code(flow)
            return
        self._after_key_change(flow.account_id)
        self._resolve(flow, key, "Secret key updated.")

    def _back_to_code(self, flow: _Flow) -> None:
        # A verified code allows a single save within the grant window.
        flow.verified_code = None
        flow.state = FlowState.AWAITING_CODE
        flow.hint = "The verification has expired. Request a new code to continue."
        if flow.cooldown.active:
            self._start_countdown(flow)
        self.ui.update(flow.view())

    def _after_key_change(self, account_id: str) -> None:
        self.trust.clear_feature("achievement", account_id)
        self.trust.clear_token_verified(account_id)
        self.trust.stamp_key_update(account_id)
