"""
One-shot maintenance sweep for an external scheduler.

This is an ALTERNATIVE to POST /health, useful from cron when the API is not
reachable, or when no server is running at all.

Usage:
    python scripts/run_maintenance.py

Fails sources of over-age jobs that no worker holds, finishes the enqueue of
jobs stuck in 'pending', and prints the summary as JSON. Workers pick up any
requeued work on their next poll.
"""

import asyncio
import json
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

from db.database import init_db
from services.orchestrator import JobOrchestrator
from services.sweeper import RetrySweeper


async def main() -> int:
    await init_db()
    sweeper = RetrySweeper(JobOrchestrator())
    summary = await sweeper.run_maintenance()
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
