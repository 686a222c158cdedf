"""Management CLI for sweeps and schema setup.

Usage:
    python -m farmbid.cli run <sweep>       # Run one sweep now (e.g. reconciliation)
    python -m farmbid.cli list-sweeps       # Show sweep names
    python -m farmbid.cli create-tables     # Create all tables (dev / tests; use Alembic in prod)
"""

import asyncio
import logging
import sys

from farmbid.database import Base, async_session, engine
from farmbid.services.scheduler import SWEEP_NAMES, build_sweeps, run_sweep


async def _run(name: str) -> dict | None:
    try:
        return await run_sweep(name, build_sweeps(async_session))
    finally:
        await engine.dispose()


def run(name: str):
    if name not in SWEEP_NAMES:
        print(f"Unknown sweep: {name}")
        list_sweeps()
        sys.exit(2)

    summary = asyncio.run(_run(name))
    if summary is None:
        print(f"  {name} is already running elsewhere, skipped")
        sys.exit(1)
    for key, value in summary.items():
        print(f"  {key}: {value}")


def list_sweeps():
    for name in SWEEP_NAMES:
        print(f"  {name}")


async def _create_tables():
    import farmbid.models  # noqa: F401  register every table

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


def create_tables():
    asyncio.run(_create_tables())
    print("  OK")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "run" and len(sys.argv) > 2:
        run(sys.argv[2])
    elif cmd == "list-sweeps":
        list_sweeps()
    elif cmd == "create-tables":
        create_tables()
    else:
        print("Usage: python -m farmbid.cli [run <sweep>|list-sweeps|create-tables]")
