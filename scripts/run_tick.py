from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime

from digestcron.core.logging import configure_logging
from digestcron.services.scheduler.orchestrator import run_scheduler_tick


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one scheduler tick and print the result")
    parser.add_argument(
        "--now",
        default=None,
        help="ISO-8601 instant to evaluate schedules at (default: current UTC time)",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    configure_logging()
    now = datetime.fromisoformat(args.now.replace("Z", "+00:00")) if args.now else None
    result = await run_scheduler_tick(now=now)
    print(json.dumps(result.to_json_dict(), indent=2))
    return 0 if result.ok else 1


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface tick failures clearly
        print(f"run_tick failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
