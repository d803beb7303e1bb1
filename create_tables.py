"""
Create (or drop) the AlertRelay tables directly from the models.

Handy for local development against a fresh database; deployments use
`alembic upgrade head` instead.

Usage:
    python create_tables.py          # create missing tables
    python create_tables.py --drop   # drop everything first
"""
import argparse
import asyncio

from alertrelay.database import engine
from alertrelay.models.base import Base
# Imported for their side effect of registering tables on Base.metadata
from alertrelay.models import channel, notification_rule, webhook  # noqa: F401


async def run(drop: bool) -> None:
    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
            print("Dropped all AlertRelay tables")
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print("Tables ready: " + ", ".join(sorted(Base.metadata.tables)))


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--drop", action="store_true", help="drop all tables before creating them")
    args = parser.parse_args()
    asyncio.run(run(args.drop))


if __name__ == "__main__":
    main()
