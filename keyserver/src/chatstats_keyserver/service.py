from __future__ import annotations

"""Key server operations behind the HTTP routes and the admin CLI."""

import hashlib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from chatstats_dashboard.paths import dashboard_home, ensure_home_dirs
from chatstats_dashboard.security import is_valid_account_id
from chatstats_dashboard.telemetry import TelemetryLogger

from .codes import Clock, CodeSender, LinkTokens, OutboxCodeSender, VerificationCodes
from .keystore import MIN_SERVER_KEY_LENGTH, KeyStore


def _require_account(account_id: str) -> str:
    account_id = (account_id or "").strip()
    if not is_valid_account_id(account_id):
        raise ValueError("userId must be numeric.")
    return account_id


@dataclass
class KeyServerService:
    keys: KeyStore
    codes: VerificationCodes
    links: LinkTokens
    telemetry: TelemetryLogger

    @classmethod
    def create(
        cls,
        data_dir: Path | None = None,
        *,
        sender: CodeSender | None = None,
        clock: Clock = time.time,
    ) -> "KeyServerService":
        """Open the store under `data_dir` (default `<home>/keyserver`) and log startup."""

        if data_dir is None:
            dirs = ensure_home_dirs(dashboard_home())
            data_dir = dirs["keyserver"]
            events_path = dirs["telemetry"] / "keyserver.jsonl"
        else:
            data_dir.mkdir(parents=True, exist_ok=True)
            events_path = data_dir / "events.jsonl"
        telemetry = TelemetryLogger(events_path, default_source="keyserver")
        service = cls(
            keys=KeyStore(data_dir / "key.json"),
            codes=VerificationCodes(sender=sender or OutboxCodeSender(data_dir / "outbox.jsonl"), clock=clock),
            links=LinkTokens(data_dir / "link_tokens.json", clock=clock),
            telemetry=telemetry,
        )
        telemetry.log_event(
            "keyserver.started",
            actor="system",
            actor_id="system:keyserver",
            data={"data_dir_hash": hashlib.sha256(str(data_dir).encode("utf-8")).hexdigest()},
        )
        return service

    def current_user(
        self,
        *,
        cookie_account: str | None = None,
        query_account: str | None = None,
        token: str | None = None,
    ) -> tuple[dict[str, Any], str | None]:
        """Resolve the caller. Returns the payload and the account to set as cookie, if any."""

        set_cookie: str | None = None
        account_id: str | None = None
        if token:
            account_id = self.links.resolve(token.strip())
            if account_id:
                set_cookie = account_id
        if account_id is None:
            for candidate in (cookie_account, query_account):
                if candidate and is_valid_account_id(candidate):
                    account_id = candidate.strip()
                    break
        if account_id is None:
            return {"userId": None, "userName": None, "role": None, "isAdmin": False}, None
        role = self.keys.role(account_id)
        payload = {
            "userId": account_id,
            "userName": self.keys.user_name(account_id),
            "role": role,
            "isAdmin": role == "admin",
        }
        return payload, set_cookie

    def get_secret_key(self, account_id: str) -> str:
        value = self.keys.public_value(_require_account(account_id))
        if value is None:
            raise KeyError("Secret key does not exist for this user.")
        return value

    def save_secret_key(
        self,
        account_id: str,
        secret_key: str,
        *,
        old_secret_key: str | None = None,
        verification_code: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Save a key; replacing one needs the old key or a just-verified code."""

        account_id = _require_account(account_id)
        if not secret_key or len(secret_key) < MIN_SERVER_KEY_LENGTH:
            raise ValueError(f"Secret key must be at least {MIN_SERVER_KEY_LENGTH} characters.")
        via = "new"
        if self.keys.has_key(account_id):
            if old_secret_key and self.keys.matches(account_id, old_secret_key):
                via = "old_key"
            elif verification_code and self.codes.consume_grant(account_id):
                via = "verification_code"
            elif old_secret_key:
                raise ValueError("Old secret key verification failed.")
            else:
                raise ValueError("Replacing an existing key requires the old key or a verified code.")
        self.keys.save(account_id, secret_key)
        self.telemetry.log_event("key.saved", actor_id=account_id, trace_id=trace_id, data={"via": via})

    def validate_secret_key(self, account_id: str, secret_key: str) -> tuple[bool, str]:
        account_id = _require_account(account_id)
        if not self.keys.has_key(account_id):
            return False, "Secret key does not exist for this user."
        if self.keys.matches(account_id, secret_key):
            return True, "Secret key verified."
        return False, "Secret key verification failed."

    def send_code(self, account_id: str, *, trace_id: str | None = None) -> None:
        account_id = _require_account(account_id)
        self.codes.send(account_id)
        self.telemetry.log_event("code.sent", actor_id=account_id, trace_id=trace_id, data={"channel": "bot"})

    def verify_code(self, account_id: str, code: str) -> tuple[bool, str]:
        return self.codes.verify(_require_account(account_id), code)

    def issue_link(self, account_id: str, *, user_name: str | None = None) -> dict[str, Any]:
        account_id = _require_account(account_id)
        if user_name:
            self.keys.set_user_name(account_id, user_name)
        return self.links.issue(account_id)

    def set_role(self, account_id: str, role: str) -> dict[str, Any]:
        account_id = _require_account(account_id)
        self.keys.set_role(account_id, role)
        return {"userId": account_id, "role": role}
