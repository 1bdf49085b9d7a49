from __future__ import annotations

import io
import json

import pytest

from chatstats_dashboard import cli
from chatstats_dashboard.bootstrap import Bootstrap
from chatstats_dashboard.console import ConsolePromptUI, parse_action
from chatstats_dashboard.prompts import Cancel, DialogView, FlowState, NotMyAccount, RequestCode, Submit


@pytest.mark.parametrize(
    ("raw", "state", "expected"),
    [
        ("later", FlowState.AWAITING_CONFIRM, Cancel()),
        (" Q ", FlowState.AWAITING_CODE, Cancel()),
        ("not my account", FlowState.AWAITING_REGISTER, NotMyAccount()),
        ("send", FlowState.AWAITING_CODE, RequestCode()),
        ("send", FlowState.AWAITING_CONFIRM, Submit("send")),
        (" 123456 ", FlowState.AWAITING_CODE, Submit("123456")),
    ],
)
def test_parse_action(raw: str, state: FlowState, expected) -> None:
    assert parse_action(raw, state) == expected


@pytest.mark.asyncio
async def test_console_ui_reads_keys_without_echo() -> None:
    out = io.StringIO()
    secrets: list[str] = []
    lines: list[str] = []

    def read_secret(prompt: str) -> str:
        secrets.append(prompt)
        return "my-key"

    def read_line(prompt: str) -> str:
        lines.append(prompt)
        return "resend"

    console = ConsolePromptUI(read_line=read_line, read_secret=read_secret, out=out)
    key_view = DialogView(FlowState.AWAITING_CONFIRM, "Confirm secret key", "10001", user_name="Ann", error="nope")
    code_view = DialogView(FlowState.AWAITING_CODE, "Verify", "10001", can_request_code=True)

    assert await console.next_action(key_view) == Submit("my-key")
    assert await console.next_action(code_view) == RequestCode()
    assert len(secrets) == 1 and len(lines) == 1
    assert "'send' for a code" in lines[0]
    rendered = out.getvalue()
    assert "Account: Ann (10001)" in rendered
    assert "Error: nope" in rendered


@pytest.mark.asyncio
async def test_console_ui_eof_cancels_and_countdown_end_is_announced() -> None:
    out = io.StringIO()

    def closed_stdin(prompt: str) -> str:
        raise EOFError

    console = ConsolePromptUI(read_line=closed_stdin, read_secret=closed_stdin, out=out)
    ticking = DialogView(FlowState.AWAITING_CODE, "Verify", "10001", countdown=2)
    assert await console.next_action(ticking) == Cancel()
    assert "Resend available in 2s." in out.getvalue()

    console.update(DialogView(FlowState.AWAITING_CODE, "Verify", "10001", countdown=0))
    console.notify("Verification code sent.", "success")
    assert "You can request a new code now." in out.getvalue()
    assert "[ok] Verification code sent." in out.getvalue()


@pytest.fixture
def boot(identity, credentials, ui, config, clock, telemetry, monkeypatch) -> Bootstrap:
    instance = Bootstrap(identity, credentials, ui, config=config, telemetry=telemetry, clock=clock)
    monkeypatch.setattr(cli, "_bootstrap", lambda: instance)
    return instance


def test_cli_login_and_whoami(boot, credentials, capsys) -> None:
    credentials.set_plaintext("20001", "server-key-1234")

    assert cli.main(["login", "--account-id", "20001"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["account_id"] == "20001"
    assert payload["established"] is True

    assert cli.main(["whoami"]) == 0
    whoami = json.loads(capsys.readouterr().out)
    assert whoami == {"account_id": "20001", "has_secret_key": True, "masked_secret_key": "serv****1234"}


def test_cli_rejects_bad_account_id(boot, capsys) -> None:
    assert cli.main(["login", "--account-id", "abc"]) == 1
    assert "Account id must be numeric." in capsys.readouterr().err


def test_cli_open_without_identity(boot, capsys) -> None:
    assert cli.main(["open"]) == 1
    captured = capsys.readouterr()
    assert json.loads(captured.out)["needs_account_id"] is True
    assert "chatstats login" in captured.err


def test_cli_open_escape_asks_for_login(boot, ui, identity, credentials, capsys) -> None:
    identity.set_account_id("20004")
    identity.set_secret_key("local")
    credentials.set_plaintext("20004", "server")
    ui.script(NotMyAccount())
    assert cli.main(["open"]) == 1
    captured = capsys.readouterr()
    assert json.loads(captured.out)["needs_account_id"] is True
    assert "chatstats login" in captured.err
    assert identity.account_id is None


def test_cli_gate_registers_missing_key(boot, ui, identity, capsys) -> None:
    identity.set_account_id("20002")
    ui.script(Submit("fresh-key"))
    assert cli.main(["gate", "settings"]) == 0
    assert json.loads(capsys.readouterr().out) == {"feature": "settings", "trusted": True}
    assert boot.trust.feature_key("settings", "20002") == "fresh-key"


def test_cli_not_my_account_and_telemetry(boot, identity, capsys) -> None:
    identity.set_account_id("20003")
    identity.set_secret_key("abcd")
    assert cli.main(["not-my-account"]) == 0
    assert json.loads(capsys.readouterr().out)["account_id"] is None

    assert cli.main(["telemetry", "status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["event_count"] >= 1

    assert cli.main(["telemetry", "purge"]) == 0
    purged = json.loads(capsys.readouterr().out)
    assert purged["window"] == "all"
    assert boot.telemetry.count_events() == 0
