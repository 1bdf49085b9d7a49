from __future__ import annotations

"""Per-feature session gates guarding sensitive writes."""

from .credentials import CredentialService
from .errors import CredentialError
from .identity import IdentityCache
from .prompts import FlowResult, PromptFlowController
from .session import FEATURES, SessionTrustCache
from .telemetry import TelemetryLogger


class SessionGate:
    """Establishes a verified key for one feature, at most once per session.

    Trust is cached under `<feature>_verified_<id>`; features never share it.
    """

    def __init__(
        self,
        feature: str,
        identity: IdentityCache,
        trust: SessionTrustCache,
        credentials: CredentialService,
        controller: PromptFlowController,
        *,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        if feature not in FEATURES:
            raise ValueError(f"Unknown feature: {feature}")
        self.feature = feature
        self.identity = identity
        self.trust = trust
        self.credentials = credentials
        self.controller = controller
        self.telemetry = telemetry

    async def acquire(self, account_id: str) -> str | None:
        """Return the verified key for this feature, prompting when needed. None means blocked."""

        cached = self.trust.feature_key(self.feature, account_id)
        if cached:
            return cached

        local_key = self.identity.secret_key
        if local_key is not None and await self._validates(account_id, local_key):
            self._trust(account_id, local_key, via="local_key")
            return local_key

        flow = await self._prompt(account_id, has_local_key=local_key is not None)
        if flow.resolved and flow.key:
            self._trust(account_id, flow.key, via="prompt")
            return flow.key
        return None

    async def _validates(self, account_id: str, key: str) -> bool:
        try:
            verdict = await self.credentials.validate_key(account_id, key)
        except CredentialError:
            return False
        return verdict.valid

    async def _prompt(self, account_id: str, *, has_local_key: bool) -> FlowResult:
        if not has_local_key:
            try:
                server_key = await self.credentials.fetch_key(account_id)
            except CredentialError:
                return await self.controller.confirm_token(account_id)
            if not server_key.exists:
                return await self.controller.register(account_id)
        return await self.controller.confirm_token(account_id)

    def _trust(self, account_id: str, key: str, *, via: str) -> None:
        self.trust.trust_feature(self.feature, account_id, key)
        if self.telemetry is not None:
            self.telemetry.log_event(
                "gate.trusted",
                actor_id=account_id,
                data={"feature": self.feature, "via": via},
            )
