from __future__ import annotations

from pathlib import Path

import pytest

from chatstats_dashboard.identity import IdentityCache
from chatstats_dashboard.security import is_encrypted_placeholder, is_valid_account_id, mask_secret_key
from chatstats_dashboard.session import SessionTrustCache, feature_trust_key


def test_identity_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "identity.json"
    first = IdentityCache(path)
    first.set_account_id("123456")
    first.set_secret_key("abcd")
    first.set_cookie("123456")
    first.set_display_name("123456", "Dana")

    second = IdentityCache(path)
    assert second.account_id == "123456"
    assert second.secret_key == "abcd"
    assert second.cookie == "123456"
    assert second.display_name("123456") == "Dana"


def test_identity_rejects_bad_input(tmp_path: Path) -> None:
    cache = IdentityCache(tmp_path / "identity.json")
    with pytest.raises(ValueError):
        cache.set_account_id("12ab")
    with pytest.raises(ValueError):
        cache.set_secret_key("   ")


def test_identity_tolerates_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "identity.json"
    path.write_text("{not json", encoding="utf-8")
    cache = IdentityCache(path)
    assert cache.account_id is None
    cache.set_account_id("1")
    assert cache.account_id == "1"


def test_clear_identity_keeps_display_names(tmp_path: Path) -> None:
    cache = IdentityCache(tmp_path / "identity.json")
    cache.set_account_id("42")
    cache.set_secret_key("abcd")
    cache.set_display_name("42", "Eve")
    cache.clear_identity()
    assert cache.snapshot() == {"account_id": None, "has_secret_key": False, "has_cookie": False}
    assert cache.display_name("42") == "Eve"


def test_session_trust_is_per_feature_and_per_account(clock) -> None:
    trust = SessionTrustCache(clock=clock)
    trust.trust_feature("achievement", "1", "k1")
    trust.trust_feature("settings", "2", "k2")
    trust.mark_token_verified("1")

    assert trust.feature_key("achievement", "1") == "k1"
    assert trust.feature_key("achievement", "2") is None
    trust.clear_account("1")
    assert trust.keys() == ["settings_verified_2"]
    assert SessionTrustCache().keys() == []

    with pytest.raises(ValueError):
        feature_trust_key("ranking", "1")


def test_trust_window_boundary(clock) -> None:
    trust = SessionTrustCache(clock=clock)
    assert not trust.within_trust_window("1", 60)
    trust.stamp_key_update("1")
    clock.advance(59)
    assert trust.within_trust_window("1", 60)
    clock.advance(1)
    assert not trust.within_trust_window("1", 60)


def test_mask_and_account_id_helpers() -> None:
    assert mask_secret_key("abcdefghij") == "abcd****ghij"
    assert mask_secret_key("abcdefgh") == "****"
    assert mask_secret_key(None) == "****"
    assert is_valid_account_id("10001")
    assert not is_valid_account_id("")
    assert not is_valid_account_id("-1")
    assert is_encrypted_placeholder(" ***已加密存储*** ")
    assert not is_encrypted_placeholder("plain")
