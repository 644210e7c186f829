#!/usr/bin/env python3
"""Delete expired and deactivated refresh sessions.

Usage:
    # One pass, then exit:
    DATABASE_URL=postgresql://... python scripts/prune_sessions.py

    # Keep running, pruning every 10 minutes:
    python scripts/prune_sessions.py --loop --interval 600

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / SHARED_FS_ROOT: prune a memory-store snapshot instead
    ACCESS_TOKEN_SECRET, REFRESH_TOKEN_SECRET, PASSWORD_PEPPER: required by the runtime
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from authcore.service.errors import ConfigurationError  # noqa: E402
from authcore.service.pruning import SessionPruner  # noqa: E402
from authcore.service.runtime import get_runtime  # noqa: E402


async def run_loop(pruner: SessionPruner) -> None:
    await pruner.start()
    try:
        while pruner.running:
            await asyncio.sleep(3600)
    finally:
        await pruner.stop()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Prune expired and inactive refresh sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running and prune periodically instead of once",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between passes with --loop (default: SESSION_PRUNE_INTERVAL_SECONDS)",
    )
    args = parser.parse_args(argv)

    try:
        runtime = get_runtime()
    except ConfigurationError as exc:
        print(f"Error: {exc.message} {exc.detail or ''}".rstrip())
        return 1

    try:
        if args.loop:
            interval = args.interval or runtime.settings.session_prune_interval_seconds
            pruner = SessionPruner(runtime.sessions, interval=interval)
            try:
                asyncio.run(run_loop(pruner))
            except KeyboardInterrupt:
                pass
            print(f"Pruned {pruner.total_pruned} sessions")
        else:
            removed = runtime.sessions.prune_expired()
            print(f"Pruned {removed} sessions")
    finally:
        runtime.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
