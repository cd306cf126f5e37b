#!/usr/bin/env python3
"""CLI script to run one bulk-match pass.

Usage:
    uv run python scripts/run_bulk_match.py
    uv run python scripts/run_bulk_match.py --source pm --targets crm --dry-run

Connects directly to the database using DATABASE_URL from environment or .env file,
builds the reconciliation engine with the configured provider tokens, runs a
single pass and prints the summary as JSON. Exits non-zero when the run fails.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.syncbridge
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(source: str | None, targets: list[str] | None, dry_run: bool, show_details: bool) -> int:
    """Run the pass and print its summary. Returns the process exit code."""
    from src.syncbridge.api.middleware.logging import configure_structlog
    from src.syncbridge.config import get_settings
    from src.syncbridge.core.database import close_db, get_session
    from src.syncbridge.reconciliation.factory import build_engine
    from src.syncbridge.reconciliation.schemas import SourceSystem

    configure_structlog()
    engine = build_engine(get_settings(), session_factory=get_session)
    try:
        result = await engine.run_bulk_match(
            source=SourceSystem(source) if source else None,
            targets=[SourceSystem(t) for t in targets] if targets else None,
            dry_run=dry_run,
        )
    finally:
        await close_db()

    exclude = None if show_details else {"details"}
    print(json.dumps(result.model_dump(mode="json", exclude=exclude), indent=2))
    return 0 if result.success else 1


def main() -> None:
    systems = ["crm", "pm", "photo"]
    parser = argparse.ArgumentParser(description="Run a cross-system bulk-match pass")
    parser.add_argument("--source", choices=systems, help="Source system (default: BULK_MATCH_SOURCE)")
    parser.add_argument(
        "--targets",
        nargs="+",
        choices=systems,
        help="Target systems in priority order (default: BULK_MATCH_TARGETS)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Evaluate matches without writing mappings")
    parser.add_argument("--details", action="store_true", help="Include per-record details in the output")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.source, args.targets, args.dry_run, args.details)))


if __name__ == "__main__":
    main()
