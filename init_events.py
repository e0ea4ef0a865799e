#!/usr/bin/env python3
"""
Create the schema and seed an event for an organizer.

Usage:
  DATABASE_URL=sqlite:///./eventverse.db python init_events.py \
      --organizer org_1 --title "Nairobi Tech Night" --price 10.00 \
      --currency USD
"""
import argparse
import asyncio
import uuid

from sqlalchemy import text

from eventverse import settings
from eventverse.helpers import now_ts
from eventverse.infra.sql import make_async_engine
from eventverse.model.db import Base


async def init_events(args) -> str:
    engine, _, _ = make_async_engine(settings.DATABASE_URL)
    event_id = args.id or f"evt_{uuid.uuid4().hex[:12]}"
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text("""
          INSERT INTO events(id, organizer_id, title, currency, base_price,
                             starts_at)
          VALUES (:id, :org, :title, :cur, :price, :starts)
        """), {
            "id": event_id,
            "org": args.organizer,
            "title": args.title,
            "cur": args.currency.upper(),
            "price": int(round(args.price * 100)),
            "starts": now_ts() + args.days * 86400,
        })
    await engine.dispose()
    return event_id


def main():
    ap = argparse.ArgumentParser(description="seed an event")
    ap.add_argument("--organizer", required=True)
    ap.add_argument("--title", required=True)
    ap.add_argument("--price", type=float, required=True,
                    help="base price in major units, e.g. 10.00")
    ap.add_argument("--currency", default="USD")
    ap.add_argument("--days", type=int, default=30,
                    help="event starts this many days from now")
    ap.add_argument("--id", default=None)
    args = ap.parse_args()
    event_id = asyncio.run(init_events(args))
    print(f'✅ event created: {event_id}')


if __name__ == "__main__":
    main()
