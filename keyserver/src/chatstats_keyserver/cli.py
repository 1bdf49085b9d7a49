from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import uvicorn

from chatstats_dashboard.config import is_local_host

from .api import create_app
from .codes import ConsoleCodeSender
from .service import KeyServerService


def _service(data_dir: str | None, *, console_codes: bool = False) -> KeyServerService:
    sender = ConsoleCodeSender() if console_codes else None
    return KeyServerService.create(Path(data_dir) if data_dir else None, sender=sender)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Chatstats reference key server")
    parser.add_argument("--data-dir", default=None, help="Key store directory (default <home>/keyserver)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_cmd = sub.add_parser("serve", help="Run the key server API")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8000)
    serve_cmd.add_argument("--allow-nonlocal", action="store_true", help="Permit binding to a non-loopback host")
    serve_cmd.add_argument("--console-codes", action="store_true", help="Print codes to stderr instead of the outbox")

    link_cmd = sub.add_parser("issue-link", help="Issue a 24h dashboard link token")
    link_cmd.add_argument("--account-id", required=True)
    link_cmd.add_argument("--name", default=None, help="Display name shown in confirmation dialogs")

    role_cmd = sub.add_parser("set-role", help="Set an account's role")
    role_cmd.add_argument("--account-id", required=True)
    role_cmd.add_argument("--role", required=True, choices=["admin", "user"])

    args = parser.parse_args(argv)

    if args.command == "serve":
        if not args.allow_nonlocal and not is_local_host(args.host):
            print("error: refusing to bind a non-local host without --allow-nonlocal", file=sys.stderr)
            return 1
        service = _service(args.data_dir, console_codes=args.console_codes)
        uvicorn.run(create_app(service), host=args.host, port=args.port, log_level="info")
        return 0

    service = _service(args.data_dir)
    try:
        if args.command == "issue-link":
            print(json.dumps(service.issue_link(args.account_id, user_name=args.name), indent=2))
            return 0
        if args.command == "set-role":
            print(json.dumps(service.set_role(args.account_id, args.role), indent=2))
            return 0
    except (KeyError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
