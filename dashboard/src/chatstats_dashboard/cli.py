from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from .bootstrap import Bootstrap
from .console import ConsolePromptUI
from .session import FEATURES
from .telemetry import parse_range


def _bootstrap() -> Bootstrap:
    return Bootstrap.create(ConsolePromptUI(), source="cli")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


async def _run(args: argparse.Namespace) -> int:
    async with _bootstrap() as boot:
        if args.command == "login":
            result = await boot.login(args.account_id)
            _print_json(result.to_dict())
            return 0 if result.established else 1

        if args.command == "open":
            result = await boot.open(token=args.token)
            _print_json(result.to_dict())
            if result.needs_account_id:
                print("No account id known. Run `chatstats login --account-id <id>` first.", file=sys.stderr)
            return 0 if result.established else 1

        if args.command == "whoami":
            _print_json(boot.describe_key())
            return 0 if boot.identity.account_id else 1

        if args.command == "gate":
            key = await boot.acquire(args.feature)
            _print_json({"feature": args.feature, "trusted": key is not None})
            return 0 if key is not None else 1

        if args.command == "change-key":
            flow = await boot.change_key()
            _print_json({"final_state": flow.state.value, **boot.describe_key()})
            return 0 if flow.resolved else 1

        if args.command == "clear-key":
            flow = await boot.clear_local_key()
            _print_json({"final_state": flow.state.value, **boot.describe_key()})
            return 0 if flow.resolved else 1

        if args.command == "not-my-account":
            boot.not_my_account()
            _print_json(boot.describe_key())
            return 0

        if args.command == "telemetry":
            telemetry = boot.telemetry
            if telemetry is None:
                return 1
            if args.telemetry_command == "status":
                _print_json(telemetry.status())
                return 0
            if args.telemetry_command == "purge":
                window = parse_range(args.older_than) if args.older_than else None
                _print_json({"purged_count": telemetry.purge(window), "window": args.older_than or "all"})
                return 0

    return 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Chat statistics dashboard credential CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    login_cmd = sub.add_parser("login", help="Store an account id and reconcile its secret key")
    login_cmd.add_argument("--account-id", required=True, help="Numeric chat account id")

    open_cmd = sub.add_parser("open", help="Run page-entry reconciliation")
    open_cmd.add_argument("--token", default=None, help="Link token issued by the chat bot")

    sub.add_parser("whoami", help="Show the stored account id and masked key")

    gate_cmd = sub.add_parser("gate", help="Establish session trust for a feature")
    gate_cmd.add_argument("feature", choices=list(FEATURES))

    sub.add_parser("change-key", help="Set a new secret key after code verification")
    sub.add_parser("clear-key", help="Remove the local secret key after code verification")
    sub.add_parser("not-my-account", help="Forget the stored identity")

    telemetry_cmd = sub.add_parser("telemetry", help="Telemetry operations")
    telemetry_sub = telemetry_cmd.add_subparsers(dest="telemetry_command", required=True)
    telemetry_sub.add_parser("status", help="Show telemetry status")
    telemetry_purge = telemetry_sub.add_parser("purge", help="Purge local telemetry events")
    telemetry_purge.add_argument("--older-than", default=None, help="Range like 30d or 720h; omit to purge all")

    args = parser.parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
