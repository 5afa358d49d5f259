"""
Dead Letter Report

Lists migration work that needs an operator:
    - durable queue rows in dead_letter
    - retry journal entries that exhausted their retries
plus queue counts per status.

Run from project root: python scripts/inspect_dead_letters.py

Version: 1.0.0
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from order_pipeline.database import create_engine, create_session_maker
from order_pipeline.services.order_queue import DurableQueue
from order_pipeline.services.retry_journal import RetryJournal


async def report(limit: int) -> int:
    """Print the report; returns the number of items needing attention."""
    print("=" * 60)
    print("🔍 DEAD LETTER REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 60)

    engine = create_engine()
    try:
        queue = DurableQueue(create_session_maker(engine))
        stats = await queue.stats()
        dead_letters = await queue.list_dead_letters(limit=limit)
    finally:
        await engine.dispose()

    print("\n📊 QUEUE:")
    for status, count in stats.items():
        print(f"   {status:<12} {count}")

    print(f"\n📋 DEAD-LETTERED QUEUE ITEMS ({len(dead_letters)}):")
    print("-" * 60)
    for item in dead_letters:
        staging_id = (item.order_data or {}).get("id", "?")
        print(
            f"   #{item.id} {staging_id} attempts={item.attempts}/{item.max_attempts} "
            f"updated={item.updated_at} correlation={item.correlation_id}"
        )
        print(f"      ↳ {item.error_message}")

    journal = RetryJournal()
    entries = journal.list_entries()
    exhausted = [(path, entry) for path, entry in entries if journal.is_exhausted(entry)]

    print(f"\n📁 RETRY JOURNAL: {len(entries)} entries, {len(exhausted)} exhausted")
    print("-" * 60)
    for path, entry in exhausted:
        print(f"   {path.name} retries={entry.retry_count} last={entry.last_retry_time}")
        print(f"      ↳ {entry.failure_reason}")

    total = len(dead_letters) + len(exhausted)
    print("\n" + "=" * 60)
    if total:
        print(f"⚠️ {total} item(s) need operator attention")
    else:
        print("✅ Nothing dead-lettered")
    print("=" * 60)
    return total


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Dead letter report")
    parser.add_argument("--limit", type=int, default=50, help="Max queue rows to list")
    args = parser.parse_args()

    sys.exit(1 if asyncio.run(report(args.limit)) else 0)
