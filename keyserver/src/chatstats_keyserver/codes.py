from __future__ import annotations

"""One-time verification codes, post-verification save grants, and link tokens."""

import json
import math
import secrets
import sys
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from chatstats_dashboard.storage import load_json, save_json


Clock = Callable[[], float]

CODE_TTL_SECONDS = 60
SEND_COOLDOWN_SECONDS = 60
GRANT_TTL_SECONDS = 60
LINK_TOKEN_TTL_SECONDS = 24 * 60 * 60
CODE_DIGITS = 6


class CooldownError(ValueError):
    """Raised when a code is requested again before the cooldown has passed."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Please wait {retry_after}s before requesting another code.")
        self.retry_after = retry_after


class DeliveryError(RuntimeError):
    pass


class CodeSender(Protocol):
    def send(self, account_id: str, code: str) -> None: ...


class OutboxCodeSender:
    """Appends each delivered code to a JSONL outbox, standing in for the chat bot."""

    def __init__(self, outbox_path: Path) -> None:
        self.outbox_path = outbox_path

    def send(self, account_id: str, code: str) -> None:
        self.outbox_path.parent.mkdir(parents=True, exist_ok=True)
        row = {
            "ts": datetime.now(tz=UTC).isoformat(),
            "account_id": account_id,
            "message": f"Your verification code is {code}. It is valid for 1 minute.",
        }
        with self.outbox_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(json.dumps(row, ensure_ascii=False))
            handle.write("\n")


class ConsoleCodeSender:
    def send(self, account_id: str, code: str) -> None:
        print(f"[keyserver] code for {account_id}: {code}", file=sys.stderr)


@dataclass
class _Issued:
    code: str
    issued_at: float


@dataclass
class VerificationCodes:
    """In-memory code registry with a send cooldown and single-use save grants."""

    sender: CodeSender
    clock: Clock = time.time
    ttl_seconds: int = CODE_TTL_SECONDS
    cooldown_seconds: int = SEND_COOLDOWN_SECONDS
    grant_ttl_seconds: int = GRANT_TTL_SECONDS
    _codes: dict[str, _Issued] = field(default_factory=dict)
    _last_sent: dict[str, float] = field(default_factory=dict)
    _grants: dict[str, float] = field(default_factory=dict)

    def retry_after(self, account_id: str) -> int:
        last = self._last_sent.get(account_id)
        if last is None:
            return 0
        return max(0, math.ceil(self.cooldown_seconds - (self.clock() - last)))

    def send(self, account_id: str) -> None:
        wait = self.retry_after(account_id)
        if wait > 0:
            raise CooldownError(wait)
        code = f"{secrets.randbelow(900000) + 100000:0{CODE_DIGITS}d}"
        self._codes[account_id] = _Issued(code=code, issued_at=self.clock())
        try:
            self.sender.send(account_id, code)
        except Exception as exc:
            self._codes.pop(account_id, None)
            raise DeliveryError(f"Failed to deliver the verification code: {exc}") from exc
        self._last_sent[account_id] = self.clock()

    def verify(self, account_id: str, code: str) -> tuple[bool, str]:
        issued = self._codes.get(account_id)
        if issued is None:
            return False, "Verification code does not exist or has expired."
        if self.clock() - issued.issued_at > self.ttl_seconds:
            del self._codes[account_id]
            return False, "Verification code has expired."
        if not secrets.compare_digest(issued.code, code.strip()):
            return False, "Verification code is incorrect."
        del self._codes[account_id]
        self._grants[account_id] = self.clock()
        return True, "Verification code accepted."

    def consume_grant(self, account_id: str) -> bool:
        """Use up the save permission earned by a recent successful verification."""

        granted_at = self._grants.pop(account_id, None)
        if granted_at is None:
            return False
        return self.clock() - granted_at <= self.grant_ttl_seconds


class LinkTokens:
    """Short link tokens the chat bot hands out; persisted so the CLI can issue them."""

    def __init__(self, path: Path, clock: Clock = time.time, ttl_seconds: int = LINK_TOKEN_TTL_SECONDS) -> None:
        self.path = path
        self.clock = clock
        self.ttl_seconds = ttl_seconds

    def _load(self) -> dict[str, Any]:
        data = load_json(self.path, {"tokens": {}})
        if not isinstance(data, dict) or not isinstance(data.get("tokens"), dict):
            return {"tokens": {}}
        return data

    def issue(self, account_id: str) -> dict[str, Any]:
        data = self._load()
        now = self.clock()
        tokens = {
            token: row
            for token, row in data["tokens"].items()
            if isinstance(row, dict) and float(row.get("expires_at", 0)) > now
        }
        token = secrets.token_hex(4)
        while token in tokens:
            token = secrets.token_hex(4)
        tokens[token] = {"account_id": account_id, "issued_at": now, "expires_at": now + self.ttl_seconds}
        save_json(self.path, {"tokens": tokens})
        return {"token": token, "account_id": account_id, "expires_in": self.ttl_seconds}

    def resolve(self, token: str) -> str | None:
        data = self._load()
        row = data["tokens"].get(token)
        if not isinstance(row, dict):
            return None
        if float(row.get("expires_at", 0)) <= self.clock():
            del data["tokens"][token]
            save_json(self.path, data)
            return None
        account_id = row.get("account_id")
        return account_id if isinstance(account_id, str) else None
