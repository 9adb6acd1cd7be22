#!/usr/bin/env python3
"""Remove session records whose daily cutoff has passed.

Intended for a periodic scheduler (cron, systemd timer, k8s CronJob). The
store's own TTLs already expire sessions; this pass corrects drift.

Usage:
    python scripts/sweep_sessions.py
    python scripts/sweep_sessions.py --redis-url redis://localhost:6379/0 --batch-size 1000

Environment Variables:
    REDIS_URL: Session store connection string
    SWEEP_BATCH_SIZE: Session ids processed concurrently per batch
    STORE_TIMEOUT_SECONDS: Per-call store timeout
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_sweep(redis_url: str, batch_size: int, timeout: float) -> dict:
    from sessiongate.service.sweep import CleanupSweep
    from sessiongate.storage.redis_store import RedisKVStore
    from sessiongate.storage.sessions import SessionRepository

    store = RedisKVStore(redis_url, operation_timeout=timeout)
    try:
        sweep = CleanupSweep(SessionRepository(store), batch_size=batch_size)
        result = await sweep.run()
    finally:
        await store.close()
    return {"scanned": result.scanned, "removed": result.removed, "failed": result.failed}


def main() -> int:
    # Store settings only; the sweep never signs or verifies tokens
    from sessiongate.config import StoreSettings
    from sessiongate.storage.errors import StoreUnavailableError

    settings = StoreSettings.from_env()
    parser = argparse.ArgumentParser(
        description="Sweep expired sessions from the session store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--redis-url",
        default=settings.redis_url,
        help="Session store URL (or set REDIS_URL env var)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.sweep_batch_size,
        help="Session ids processed concurrently per batch",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(
            run_sweep(args.redis_url, args.batch_size, settings.store_timeout_seconds)
        )
    except StoreUnavailableError as exc:
        print(f"Error: session store unavailable: {exc.message}")
        return 1

    print(
        f"Scanned {result['scanned']} sessions, removed {result['removed']}, "
        f"failed {result['failed']}"
    )
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
