#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from app_config import load_config
from services.user_access_service import ROLES, create_session


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mint a signed bearer token for one user directly from terminal.",
    )
    parser.add_argument("--user-id", type=int, required=True, help="Numeric user id carried in the token")
    parser.add_argument("--role", choices=list(ROLES), default="student")
    parser.add_argument("--display-name", default="", help="Optional display name")
    parser.add_argument(
        "--ttl",
        type=int,
        default=None,
        help="Token lifetime in seconds; defaults to SESSION_TTL_SECONDS from the app config.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.user_id <= 0:
        parser.error("--user-id must be > 0")
    try:
        config = load_config()
    except (RuntimeError, ValueError) as exc:
        parser.error(str(exc))

    ttl = args.ttl if args.ttl is not None else config.session_ttl_seconds
    if ttl <= 0:
        parser.error("--ttl must be > 0")

    token = create_session(
        {
            "userId": args.user_id,
            "role": args.role,
            "displayName": args.display_name.strip() or f"User #{args.user_id}",
        },
        config.session_secret_bytes,
        ttl,
    )
    print(token)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
