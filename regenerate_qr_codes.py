#!/usr/bin/env python3
"""
Re-render every ticket's QR image against the current APP_URL.

Only the image changes; the scan payload stored on the ticket stays the
same, so tickets already handed out keep scanning.

Usage:
  APP_URL=https://tickets.example.com python regenerate_qr_codes.py
"""
import argparse
import asyncio

from eventverse import settings
from eventverse.infra.sql import make_async_engine
from eventverse.model.tickets import TicketStore
from eventverse.qr import render_data_url, ticket_url


async def regenerate(base_url: str) -> int:
    engine, SessionAsync, gated = make_async_engine(settings.DATABASE_URL)
    n = 0
    async with SessionAsync() as session:
        store = TicketStore(db=session, gated=gated)
        for ticket_id in await store.list_ticket_ids():
            url = ticket_url(ticket_id, base_url)
            await store.set_qr_image(ticket_id, render_data_url(url))
            n += 1
            print(f'✅ {ticket_id} -> {url}')
    await engine.dispose()
    return n


def main():
    ap = argparse.ArgumentParser(description="regenerate ticket QR codes")
    ap.add_argument("--base", default=settings.APP_URL)
    args = ap.parse_args()
    print(f'Using base URL: {args.base}')
    n = asyncio.run(regenerate(args.base))
    print(f'🎉 regenerated {n} QR code(s)')


if __name__ == "__main__":
    main()
