from __future__ import annotations

"""Local event log for reconciliation and key server activity.

Every event is one JSON object per line in an append-only file. Payloads pass
through `sanitize_event_data` first, so secret keys, verification codes,
link tokens and anything that looks like PII never reach disk. When the
sanitizer had to intervene a `risk.flagged` event follows the original one.
"""

import json
import platform
import re
import sys
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any

from .security import is_secret_field, payload_contains_pii, payload_contains_secrets


SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "dashboard.started",
    "identity.resolved",
    "identity.cleared",
    "reconcile.completed",
    "reconcile.skipped",
    "prompt.resolved",
    "key.saved",
    "code.sent",
    "gate.trusted",
    "keyserver.started",
    "risk.flagged",
}
ACTOR_KINDS = {"user", "system"}
SOURCES = {"cli", "dashboard", "keyserver"}
MAX_STRING_LENGTH = 200
REDACTED = "[redacted]"
TRUNCATED_SUFFIX = "...[truncated]"
RANGE_PATTERN = re.compile(r"^(\d+)([dh])$")
RANGE_UNITS = {"d": "days", "h": "hours"}


def _timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(tz=UTC)
    return moment.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _read_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.astimezone(UTC) if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _dump_line(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True) + "\n"


@dataclass
class SanitizeStats:
    redacted_fields: int = 0
    truncated_fields: int = 0

    @property
    def touched(self) -> bool:
        return bool(self.redacted_fields or self.truncated_fields)


@dataclass
class _Sanitizer:
    stats: SanitizeStats = field(default_factory=SanitizeStats)

    def text(self, value: str, *, fallback: str = "") -> str:
        cleaned = "".join(ch for ch in value if not unicodedata.category(ch).startswith("C")).strip()
        cleaned = cleaned or fallback
        if payload_contains_secrets(cleaned) or payload_contains_pii(cleaned):
            self.stats.redacted_fields += 1
            return REDACTED
        if len(cleaned) > MAX_STRING_LENGTH:
            self.stats.truncated_fields += 1
            return cleaned[:MAX_STRING_LENGTH] + TRUNCATED_SUFFIX
        return cleaned

    def value(self, value: Any) -> Any:
        if isinstance(value, dict):
            cleaned: dict[str, Any] = {}
            for key, item in value.items():
                name = self.text(str(key))
                if is_secret_field(key) and item not in (None, ""):
                    self.stats.redacted_fields += 1
                    cleaned[name] = REDACTED
                else:
                    cleaned[name] = self.value(item)
            return cleaned
        if isinstance(value, list):
            return [self.value(item) for item in value]
        if value is None or isinstance(value, (bool, int, float)):
            return value
        return self.text(str(value))


def sanitize_event_data(data: Any) -> tuple[Any, SanitizeStats]:
    """Strip credentials, PII and control characters from a payload, recursively."""

    sanitizer = _Sanitizer()
    return sanitizer.value(data), sanitizer.stats


def sanitize_actor_id(value: Any) -> str:
    """Make an actor or trace id safe to log; unusable values become `unknown`."""

    if value is None:
        return "unknown"
    return _Sanitizer().text(str(value), fallback="unknown")


def parse_range(range_value: str) -> timedelta:
    """Parse windows such as `30d` or `12h` used by `telemetry purge --older-than`."""

    match = RANGE_PATTERN.match(range_value.strip().lower())
    if not match:
        raise ValueError("range must be like 7d or 24h")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError("range amount must be > 0")
    return timedelta(**{RANGE_UNITS[match.group(2)]: amount})


def detect_dashboard_version() -> str:
    try:
        return package_version("chatstats-dashboard")
    except PackageNotFoundError:
        return "0.1.0"


def _build_info() -> dict[str, str]:
    return {
        "dashboard_version": detect_dashboard_version(),
        "python_version": sys.version.split()[0],
        "platform": platform.platform(),
    }


@dataclass(frozen=True)
class TelemetryEvent:
    event_type: str
    actor_kind: str
    actor_id: str
    source: str
    data: dict[str, Any]
    build: dict[str, str]
    trace_id: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: str = field(default_factory=_timestamp)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "event_id": self.event_id,
            "ts": self.ts,
            "event_type": self.event_type,
            "actor": {"kind": self.actor_kind, "id": self.actor_id},
            "source": self.source,
            "build": self.build,
            "data": self.data,
        }
        if self.trace_id:
            payload["trace_id"] = self.trace_id
        return payload


class TelemetryLogger:
    """JSONL event log shared by the dashboard CLI and the key server.

    Logging never raises: a failed write is reported on stderr and dropped.
    """

    def __init__(self, events_path: Path, *, default_source: str = "dashboard") -> None:
        self.events_path = events_path
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        self.default_source = default_source if default_source in SOURCES else "dashboard"
        self.build = _build_info()

    def _event(
        self,
        event_type: str,
        data: dict[str, Any],
        *,
        actor: str,
        actor_id: str | None,
        source: str | None,
        trace_id: str | None,
    ) -> TelemetryEvent:
        if event_type not in VALID_EVENT_TYPES:
            data = {"reason": "invalid_event_type", "invalid_event_type": sanitize_actor_id(event_type)}
            event_type = "risk.flagged"
        kind = actor.strip().lower() if isinstance(actor, str) else "system"
        return TelemetryEvent(
            event_type=event_type,
            actor_kind=kind if kind in ACTOR_KINDS else "system",
            actor_id=sanitize_actor_id(actor_id),
            source=source if source in SOURCES else self.default_source,
            data=data,
            build=self.build,
            trace_id=sanitize_actor_id(trace_id) if trace_id else None,
        )

    def _append(self, event: TelemetryEvent) -> None:
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(_dump_line(event.to_dict()))

    def log_event(
        self,
        event_type: str,
        *,
        data: dict[str, Any],
        actor: str = "user",
        actor_id: str | None = None,
        source: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        try:
            cleaned, stats = sanitize_event_data(data)
            if not isinstance(cleaned, dict):
                cleaned = {"value": cleaned}
            context = {"actor_id": actor_id, "source": source, "trace_id": trace_id}
            self._append(self._event(event_type, cleaned, actor=actor, **context))
            if stats.touched:
                flag = {
                    "reason": "telemetry_sanitized",
                    "trigger_event_type": event_type,
                    "fields_redacted_count": stats.redacted_fields,
                    "fields_truncated_count": stats.truncated_fields,
                }
                self._append(self._event("risk.flagged", flag, actor="system", **context))
        except Exception as exc:  # noqa: BLE001
            print(f"[telemetry] failed to append event: {exc}", file=sys.stderr)

    def iter_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        """Parsed events in file order; unreadable lines are skipped."""

        if not self.events_path.exists():
            return []
        events: list[dict[str, Any]] = []
        for line in self.events_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict) and (event_type is None or payload.get("event_type") == event_type):
                events.append(payload)
        return events

    def count_events(self) -> int:
        if not self.events_path.exists():
            return 0
        return sum(1 for line in self.events_path.read_text(encoding="utf-8").splitlines() if line.strip())

    def status(self) -> dict[str, Any]:
        return {
            "events_path": str(self.events_path),
            "exists": self.events_path.exists(),
            "event_count": self.count_events(),
            "schema_version": SCHEMA_VERSION,
        }

    def purge(self, older_than: timedelta | None = None) -> int:
        """Drop events older than `older_than`; with no window the whole log goes."""

        if not self.events_path.exists():
            return 0
        if older_than is None:
            removed = self.count_events()
            self.events_path.unlink()
            return removed
        cutoff = datetime.now(tz=UTC) - older_than
        kept: list[dict[str, Any]] = []
        for event in self.iter_events():
            stamp = _read_timestamp(event.get("ts"))
            if stamp is None or stamp >= cutoff:
                kept.append(event)
        removed = self.count_events() - len(kept)
        self.events_path.write_text("".join(_dump_line(event) for event in kept), encoding="utf-8")
        return removed
