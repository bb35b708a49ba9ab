from __future__ import annotations

import argparse
import asyncio
import json
import sys

from digestcron.domain.schedule import normalize_target_key
from digestcron.persistence.blob_store import get_blob_store
from digestcron.services.notifications.breaker import TargetRef
from digestcron.services.ops_status import unmute_breaker_target


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Clear a muted notification target")
    parser.add_argument("--channel", required=True, choices=["email", "slack", "webhook"])
    parser.add_argument("--target-key", default=None, help="Target alias for slack/webhook")
    parser.add_argument("--recipient-key", default=None, help="Recipient key for email")
    return parser


def _target(args: argparse.Namespace) -> TargetRef:
    if args.channel == "email":
        if not args.recipient_key:
            raise ValueError("--recipient-key is required for email")
        return TargetRef(channel="email", recipient_key=args.recipient_key)
    return TargetRef(channel=args.channel, target_key=normalize_target_key(args.target_key or ""))


async def _unmute(args: argparse.Namespace) -> int:
    entry = await unmute_breaker_target(get_blob_store(), _target(args))
    print(json.dumps(entry, indent=2))
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_unmute(args))
    except Exception as exc:  # noqa: BLE001 - surface operator errors clearly
        print(f"unmute_target failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
