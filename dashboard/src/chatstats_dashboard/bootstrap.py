from __future__ import annotations

"""Page-entry wiring: resolve the account, reconcile the key, drive the matching dialog."""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import DashboardConfig, load_config
from .credentials import CredentialService, CurrentUser, HttpCredentialService
from .errors import CredentialError
from .gate import SessionGate
from .identity import IdentityCache
from .paths import dashboard_home, ensure_home_dirs
from .prompts import FlowResult, PromptFlowController, PromptUI
from .reconcile import EntryMode, ReconcileContext, ReconciliationEngine, ReconciliationResult
from .security import is_valid_account_id, mask_secret_key
from .session import Clock, SessionTrustCache
from .telemetry import TelemetryLogger


@dataclass(frozen=True)
class OpenResult:
    account_id: str | None
    mode: EntryMode
    needs_account_id: bool = False
    skipped: bool = False
    user: CurrentUser | None = None
    reconciliation: ReconciliationResult | None = None
    flow: FlowResult | None = None

    @property
    def established(self) -> bool:
        """True when the session ends with a trusted key or a resolved dialog."""

        return self.flow is not None and self.flow.resolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "mode": self.mode.value,
            "needs_account_id": self.needs_account_id,
            "skipped": self.skipped,
            "user_name": self.user.user_name if self.user else None,
            "is_admin": self.user.is_admin if self.user else False,
            "outcome": self.reconciliation.outcome.value if self.reconciliation else None,
            "final_state": self.flow.state.value if self.flow else None,
            "established": self.established,
        }


class Bootstrap:
    """One dashboard "tab": its caches, its in-flight token and its gates."""

    def __init__(
        self,
        identity: IdentityCache,
        credentials: CredentialService,
        ui: PromptUI,
        *,
        config: DashboardConfig | None = None,
        telemetry: TelemetryLogger | None = None,
        clock: Clock = time.time,
        trust: SessionTrustCache | None = None,
        context: ReconcileContext | None = None,
    ) -> None:
        self.identity = identity
        self.credentials = credentials
        self.ui = ui
        self.config = config or DashboardConfig()
        self.telemetry = telemetry
        self.trust = trust or SessionTrustCache(clock=clock)
        self.context = context or ReconcileContext()
        self.engine = ReconciliationEngine(
            identity, self.trust, credentials, config=self.config, telemetry=telemetry
        )
        self.controller = PromptFlowController(
            identity,
            self.trust,
            credentials,
            ui,
            config=self.config,
            telemetry=telemetry,
            clock=clock,
        )
        self._gates: dict[str, SessionGate] = {}

    @classmethod
    def create(
        cls,
        ui: PromptUI,
        *,
        home: Path | None = None,
        credentials: CredentialService | None = None,
        environ: dict[str, str] | None = None,
        source: str = "dashboard",
    ) -> "Bootstrap":
        """Build a bootstrap from `<home>` config and state, logging startup telemetry."""

        home = home or dashboard_home()
        dirs = ensure_home_dirs(home)
        config = load_config(home, environ=environ)
        identity = IdentityCache(dirs["state"] / "identity.json")
        telemetry = TelemetryLogger(dirs["telemetry"] / "events.jsonl", default_source=source)
        if credentials is None:
            credentials = HttpCredentialService(
                config.api_base,
                identity=identity,
                timeout=config.request_timeout_seconds,
            )
        telemetry.log_event(
            "dashboard.started",
            actor="system",
            actor_id="system:dashboard",
            data={"home_path_hash": hashlib.sha256(str(home).encode("utf-8")).hexdigest()},
        )
        return cls(identity, credentials, ui, config=config, telemetry=telemetry)

    async def __aenter__(self) -> "Bootstrap":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        close = getattr(self.credentials, "aclose", None)
        if close is not None:
            await close()

    # Page entry

    async def _resolve_account(self, token: str | None) -> tuple[str | None, CurrentUser | None, str]:
        cached = self.identity.account_id
        try:
            user = await asyncio.wait_for(
                self.credentials.current_user(cached, token),
                timeout=self.config.current_user_timeout_seconds,
            )
        except (CredentialError, asyncio.TimeoutError):
            return cached, None, "cache"
        if user.user_id and is_valid_account_id(user.user_id):
            return user.user_id, user, "current_user"
        return cached, user, "cache"

    def _remember(self, account_id: str, user: CurrentUser | None, *, via: str) -> None:
        if self.identity.account_id != account_id:
            self.identity.set_account_id(account_id)
        if user is not None and user.user_name and user.user_id == account_id:
            self.identity.set_display_name(account_id, user.user_name)
        if self.telemetry is not None:
            self.telemetry.log_event("identity.resolved", actor_id=account_id, data={"via": via})

    async def open(self, token: str | None = None) -> OpenResult:
        """Entry point for a page load, optionally from a bot-issued link token."""

        mode = EntryMode.TOKEN_LINK if token else EntryMode.NORMAL
        account_id, user, via = await self._resolve_account(token)
        if account_id is None:
            return OpenResult(None, mode, needs_account_id=True, user=user)
        self._remember(account_id, user, via=via)

        flows: list[FlowResult] = []

        async def handle(result: ReconciliationResult) -> None:
            flow = await self.controller.resolve_outcome(account_id, result)
            if mode is EntryMode.TOKEN_LINK and flow.resolved:
                self.trust.mark_token_verified(account_id)
            flows.append(flow)

        result = await self.engine.run(self.context, account_id, mode, handle)
        if result is None:
            return OpenResult(account_id, mode, skipped=True, user=user)
        flow = flows[0] if flows else None
        return OpenResult(
            account_id,
            mode,
            needs_account_id=flow is not None and flow.escaped,
            user=user,
            reconciliation=result,
            flow=flow,
        )

    async def login(self, account_id: str) -> OpenResult:
        """Capture a typed account id and run a normal page entry for it."""

        account_id = account_id.strip()
        if not is_valid_account_id(account_id):
            raise ValueError("Account id must be numeric.")
        self.identity.set_account_id(account_id)
        return await self.open()

    def not_my_account(self) -> None:
        account_id = self.identity.account_id
        self.identity.clear_identity()
        if account_id is not None:
            self.trust.clear_account(account_id)
        if self.telemetry is not None:
            self.telemetry.log_event("identity.cleared", actor_id=account_id, data={"reason": "not_my_account"})

    # Gates

    def gate(self, feature: str) -> SessionGate:
        if feature not in self._gates:
            self._gates[feature] = SessionGate(
                feature,
                self.identity,
                self.trust,
                self.credentials,
                self.controller,
                telemetry=self.telemetry,
            )
        return self._gates[feature]

    async def acquire(self, feature: str) -> str | None:
        account_id = self.identity.account_id
        if account_id is None:
            return None
        return await self.gate(feature).acquire(account_id)

    # Settings

    def _require_account(self) -> str:
        account_id = self.identity.account_id
        if account_id is None:
            raise ValueError("No account id is stored; log in first.")
        return account_id

    async def change_key(self) -> FlowResult:
        return await self.controller.change_key(self._require_account())

    async def clear_local_key(self) -> FlowResult:
        return await self.controller.clear_local_key(self._require_account())

    def describe_key(self) -> dict[str, Any]:
        key = self.identity.secret_key
        return {
            "account_id": self.identity.account_id,
            "has_secret_key": key is not None,
            "masked_secret_key": mask_secret_key(key) if key is not None else None,
        }
