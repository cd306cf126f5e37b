#!/usr/bin/env python3
"""CLI script to load exported records into the local mirror.

Usage:
    uv run python scripts/load_mirror.py --system pm --file exports/pm_projects.json

The file holds a JSON array of records using the mirror's field names
(external_id, name, street_address, city, state, project_number, stage,
estimated_value, embedded_cross_refs, properties). Existing rows with the
same (system, external_id) are replaced.
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


async def load(system: str, path: str) -> None:
    """Validate every record, then upsert them in one transaction."""
    from sqlalchemy.dialects.postgresql import insert

    from src.syncbridge.core.database import close_db, get_engine, init_db
    from src.syncbridge.reconciliation.models import MirroredRecordModel
    from src.syncbridge.reconciliation.schemas import parse_record

    with open(path, encoding="utf-8") as f:
        raw = json.load(f)

    rows = []
    for item in raw:
        record = parse_record({**item, "system": system})
        rows.append(record.model_dump(mode="json", exclude={"pipeline", "company_id"}))

    await init_db()
    engine = get_engine()
    try:
        async with engine.begin() as conn:
            for row in rows:
                stmt = insert(MirroredRecordModel).values(**row)
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_mirrored_records_system_external_id",
                    set_={k: v for k, v in row.items() if k not in ("system", "external_id")},
                )
                await conn.execute(stmt)
    finally:
        await close_db()

    print(f"Loaded {len(rows)} {system} records from {path}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Load exported records into the local mirror")
    parser.add_argument("--system", required=True, choices=["crm", "pm", "photo"])
    parser.add_argument("--file", required=True, help="Path to a JSON array of records")
    args = parser.parse_args()

    asyncio.run(load(args.system, args.file))


if __name__ == "__main__":
    main()
