from __future__ import annotations

"""Per-process session trust flags, keyed per feature and per account id."""

import time
from typing import Callable


FEATURES = ("achievement", "background", "settings", "admin")

Clock = Callable[[], float]


def token_trust_key(account_id: str) -> str:
    return f"token_verified_{account_id}"


def feature_trust_key(feature: str, account_id: str) -> str:
    if feature not in FEATURES:
        raise ValueError(f"Unknown feature: {feature}")
    return f"{feature}_verified_{account_id}"


def key_updated_key(account_id: str) -> str:
    return f"secret_key_updated_{account_id}"


class SessionTrustCache:
    """Ephemeral trust flags that live exactly as long as this object.

    Nothing here is ever written to disk; a new process starts with no trust.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._values: dict[str, str] = {}
        self._clock = clock

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._values)

    def is_token_verified(self, account_id: str) -> bool:
        return self.get(token_trust_key(account_id)) == "true"

    def mark_token_verified(self, account_id: str) -> None:
        self.set(token_trust_key(account_id), "true")

    def clear_token_verified(self, account_id: str) -> None:
        self.remove(token_trust_key(account_id))

    def feature_key(self, feature: str, account_id: str) -> str | None:
        return self.get(feature_trust_key(feature, account_id))

    def trust_feature(self, feature: str, account_id: str, verified_key: str) -> None:
        self.set(feature_trust_key(feature, account_id), verified_key)

    def clear_feature(self, feature: str, account_id: str) -> None:
        self.remove(feature_trust_key(feature, account_id))

    def stamp_key_update(self, account_id: str) -> int:
        stamp = int(self._clock() * 1000)
        self.set(key_updated_key(account_id), str(stamp))
        return stamp

    def key_updated_at(self, account_id: str) -> int | None:
        raw = self.get(key_updated_key(account_id))
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def clear_key_update(self, account_id: str) -> None:
        self.remove(key_updated_key(account_id))

    def within_trust_window(self, account_id: str, window_seconds: int) -> bool:
        stamp = self.key_updated_at(account_id)
        if stamp is None:
            return False
        return int(self._clock() * 1000) - stamp < window_seconds * 1000

    def clear_account(self, account_id: str) -> None:
        suffix = f"_{account_id}"
        for key in [key for key in self._values if key.endswith(suffix)]:
            del self._values[key]
