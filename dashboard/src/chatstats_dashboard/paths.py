from __future__ import annotations

import os
from pathlib import Path


def dashboard_home() -> Path:
    configured = os.environ.get("CHATSTATS_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".chatstats"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    state = base / "state"
    telemetry = base / "telemetry"
    keyserver = base / "keyserver"
    for path in (base, state, telemetry, keyserver):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "state": state, "telemetry": telemetry, "keyserver": keyserver}
