from __future__ import annotations

"""JSON state files shared by the identity cache and the key server stores."""

import json
import time
from pathlib import Path
from typing import Any


REPLACE_ATTEMPTS = 5
REPLACE_BACKOFF_SECONDS = 0.02


def load_json(path: Path, default: Any) -> Any:
    """Read a state file; a missing, empty or corrupt file yields `default`."""

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    if not text.strip():
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


def save_json(path: Path, value: Any) -> None:
    """Write through a sibling temp file so readers never see a half-written document."""

    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f".{path.name}.tmp")
    staging.write_text(json.dumps(value, indent=2, ensure_ascii=False), encoding="utf-8")
    for attempt in range(1, REPLACE_ATTEMPTS + 1):
        try:
            staging.replace(path)
            return
        except PermissionError:
            # Replace can fail while another process holds the target open.
            if attempt == REPLACE_ATTEMPTS:
                raise
            time.sleep(REPLACE_BACKOFF_SECONDS * attempt)
