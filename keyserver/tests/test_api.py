from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from chatstats_keyserver.api import TRACE_HEADER, create_app
from chatstats_keyserver.service import KeyServerService


class _Clock:
    def __init__(self) -> None:
        self.now = 1_770_000_000.0

    def __call__(self) -> float:
        return self.now


class _Sender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, account_id: str, code: str) -> None:
        self.sent.append((account_id, code))


def _service_and_client(tmp_path: Path) -> tuple[KeyServerService, TestClient, _Sender, _Clock]:
    sender = _Sender()
    clock = _Clock()
    service = KeyServerService.create(tmp_path / "keyserver", sender=sender, clock=clock)
    return service, TestClient(create_app(service)), sender, clock


def _events(service: KeyServerService) -> list[dict]:
    return list(service.telemetry.iter_events())


def test_health_and_trace_header(tmp_path: Path) -> None:
    _, client, _, _ = _service_and_client(tmp_path)
    response = client.get("/api/health", headers={TRACE_HEADER: "dashboard:abc"})
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": {"status": "ok", "version": "0.1"}, "message": ""}
    assert response.headers[TRACE_HEADER] == "dashboard:abc"
    assert client.get("/api/health").headers[TRACE_HEADER].startswith("keyserver:")


def test_secret_key_lookup_hides_hashed_keys(tmp_path: Path) -> None:
    _, client, _, _ = _service_and_client(tmp_path)
    missing = client.get("/api/secret-key/10001")
    assert missing.status_code == 404
    assert missing.json()["success"] is False

    saved = client.post("/api/save-secret-key", json={"userId": "10001", "secretKey": "abcd"})
    assert saved.json() == {"success": True, "data": None, "message": "Secret key saved."}

    found = client.get("/api/secret-key/10001").json()
    assert found["data"] == {"secretKey": "***已加密***", "hasExistingKey": True}
    assert client.get("/api/secret-key/abc").status_code == 400

    raw = (tmp_path / "keyserver" / "key.json").read_text(encoding="utf-8")
    assert "abcd" not in raw
    entry = json.loads(raw)["10001"]
    assert len(entry["salt"]) == 32
    assert len(entry["hash"]) == 128
    assert entry["role"] == "user"


def test_save_rules(tmp_path: Path) -> None:
    service, client, _, _ = _service_and_client(tmp_path)
    short = client.post("/api/save-secret-key", json={"userId": "10002", "secretKey": "ab"})
    assert short.status_code == 400
    assert "at least 3" in short.json()["message"]

    client.post("/api/save-secret-key", json={"userId": "10002", "secretKey": "first"})
    blocked = client.post("/api/save-secret-key", json={"userId": "10002", "secretKey": "second"})
    assert blocked.status_code == 400
    wrong_old = client.post(
        "/api/save-secret-key",
        json={"userId": "10002", "secretKey": "second", "oldSecretKey": "nope"},
    )
    assert wrong_old.json()["message"] == "Old secret key verification failed."
    replaced = client.post(
        "/api/save-secret-key",
        json={"userId": "10002", "secretKey": "second", "oldSecretKey": "first"},
    )
    assert replaced.status_code == 200
    assert service.keys.matches("10002", "second")
    vias = [e["data"]["via"] for e in service.telemetry.iter_events("key.saved")]
    assert vias == ["new", "old_key"]


def test_missing_parameters_are_400_envelopes(tmp_path: Path) -> None:
    _, client, _, _ = _service_and_client(tmp_path)
    response = client.post("/api/validate-secret-key", json={"userId": "10003"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert "secretKey" in body["message"]


def test_validate_secret_key(tmp_path: Path) -> None:
    _, client, _, _ = _service_and_client(tmp_path)
    absent = client.post("/api/validate-secret-key", json={"userId": "10004", "secretKey": "abcd"}).json()
    assert absent["data"] == {"valid": False}
    assert absent["message"] == "Secret key does not exist for this user."

    client.post("/api/save-secret-key", json={"userId": "10004", "secretKey": "abcd"})
    ok = client.post("/api/validate-secret-key", json={"userId": "10004", "secretKey": "abcd"}).json()
    assert ok["data"] == {"valid": True}
    bad = client.post("/api/validate-secret-key", json={"userId": "10004", "secretKey": "abce"}).json()
    assert bad["data"] == {"valid": False}


def test_code_cooldown_and_grant(tmp_path: Path) -> None:
    service, client, sender, clock = _service_and_client(tmp_path)
    service.keys.save("10005", "abcd")

    assert client.post("/api/send-verification-code", json={"userId": "10005"}).status_code == 200
    clock.now += 10
    again = client.post("/api/send-verification-code", json={"userId": "10005"})
    assert again.status_code == 429
    assert again.headers["Retry-After"] == "50"

    code = sender.sent[0][1]
    verified = client.post("/api/verify-code", json={"userId": "10005", "code": code}).json()
    assert verified["data"] == {"valid": True}
    saved = client.post(
        "/api/save-secret-key",
        json={"userId": "10005", "secretKey": "efgh", "verificationCode": code},
    )
    assert saved.status_code == 200
    reused = client.post(
        "/api/save-secret-key",
        json={"userId": "10005", "secretKey": "ijkl", "verificationCode": code},
    )
    assert reused.status_code == 400
    assert service.keys.matches("10005", "efgh")
    assert "code.sent" in [e["event_type"] for e in _events(service)]


def test_delivery_failure_is_502(tmp_path: Path) -> None:
    service, client, _, _ = _service_and_client(tmp_path)

    class _Broken:
        def send(self, account_id: str, code: str) -> None:
            raise OSError("bot offline")

    service.codes.sender = _Broken()
    response = client.post("/api/send-verification-code", json={"userId": "10006"})
    assert response.status_code == 502
    assert "bot offline" in response.json()["message"]
    retry = client.post("/api/verify-code", json={"userId": "10006", "code": "123456"}).json()
    assert retry["data"] == {"valid": False}


def test_generate_token_and_current_user_cookie(tmp_path: Path) -> None:
    service, client, _, clock = _service_and_client(tmp_path)
    anonymous = client.get("/api/current-user").json()["data"]
    assert anonymous == {"userId": None, "userName": None, "role": None, "isAdmin": False}

    issued = client.post("/api/generate-token", json={"userId": "10007", "userName": "Kim"}).json()["data"]
    assert len(issued["token"]) == 8
    assert issued["expiresIn"] == 86_400_000
    service.set_role("10007", "admin")

    response = client.get("/api/current-user", params={"token": issued["token"]})
    assert response.json()["data"] == {"userId": "10007", "userName": "Kim", "role": "admin", "isAdmin": True}
    assert "userId=10007" in response.headers["set-cookie"]
    assert "httponly" in response.headers["set-cookie"].lower()

    by_cookie = client.get("/api/current-user").json()["data"]
    assert by_cookie["userId"] == "10007"

    clock.now += 86_400
    fresh = TestClient(create_app(service))
    expired = fresh.get("/api/current-user", params={"token": issued["token"]}).json()["data"]
    assert expired["userId"] is None


def test_internal_errors_become_500_envelopes(tmp_path: Path, monkeypatch) -> None:
    service, _, _, _ = _service_and_client(tmp_path)

    def explode(account_id: str) -> str:
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(service, "get_secret_key", explode)
    client = TestClient(create_app(service), raise_server_exceptions=False)
    response = client.get("/api/secret-key/10008")
    assert response.status_code == 500
    assert response.json()["success"] is False
    flagged = [e for e in _events(service) if e["event_type"] == "risk.flagged"]
    assert flagged[-1]["data"]["reason"] == "keyserver_internal_error"
