#!/usr/bin/env python3
"""
EventVerse API client (async)

Drives the purchase flow the way the browser does:
  1) POST /api/tickets                 -> PENDING tickets
  2) POST /api/tickets/checkout        -> card session + redirect url
     or POST /api/mpesa/checkout       -> STK push sent to the phone
  3) poll POST /api/mpesa/status (or GET /api/tickets/session/{id})
     until CONFIRMED / FAILED, backing off when rate limited

Usage:
  python -m eventverse.client --base http://localhost:8000 \
        --user alice --event evt_demo --quantity 2 --flow mock

  python -m eventverse.client --base http://localhost:8000 \
        --user alice --event evt_demo --flow mpesa --phone 254712345678

Giving up on polling never cancels the payment: a late callback still
confirms the tickets server-side.
"""
from __future__ import annotations
import argparse
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .errors import PaymentTimeout, ProviderError
from .polling import Backoff

Sleep = Callable[[float], Awaitable[None]]

SETTLED = ("CONFIRMED", "FAILED")


class TicketingClient:
    def __init__(self, http: httpx.AsyncClient, base: str = "",
                 user_id: Optional[str] = None) -> None:
        self.http = http
        self.base = base.rstrip("/")
        self.user_id = user_id

    def _headers(self) -> Dict[str, str]:
        return {"x-user-id": self.user_id} if self.user_id else {}

    async def _call(self, method: str, path: str,
                    **kw: Any) -> httpx.Response:
        return await self.http.request(
            method, f"{self.base}{path}", headers=self._headers(), **kw
        )

    async def book(self, event_id: str, quantity: int = 1) -> List[dict]:
        r = await self._call(
            "POST", "/api/tickets",
            json={"event_id": event_id, "quantity": quantity},
        )
        r.raise_for_status()
        return r.json()["tickets"]

    async def card_checkout(self, ticket_ids: List[str]) -> Dict[str, str]:
        r = await self._call(
            "POST", "/api/tickets/checkout", json={"ticket_ids": ticket_ids}
        )
        r.raise_for_status()
        return r.json()

    async def mpesa_checkout(self, ticket_ids: List[str],
                             phone: str) -> Dict[str, Any]:
        r = await self._call(
            "POST", "/api/mpesa/checkout",
            json={"ticket_ids": ticket_ids, "phone_number": phone},
        )
        r.raise_for_status()
        return r.json()

    async def mpesa_status(self, checkout_id: str) -> httpx.Response:
        return await self._call(
            "POST", "/api/mpesa/status",
            json={"checkout_request_id": checkout_id},
        )

    async def session_status(self, session_id: str) -> httpx.Response:
        return await self._call("GET", f"/api/tickets/session/{session_id}")

    async def scan(self, token: str) -> Dict[str, Any]:
        r = await self._call(
            "POST", "/api/tickets/scan", json={"qr_code_data": token}
        )
        r.raise_for_status()
        return r.json()

    async def wait_for_payment(
        self, check: Callable[[], Awaitable[httpx.Response]],
        backoff: Optional[Backoff] = None, sleep: Sleep = asyncio.sleep,
    ) -> Dict[str, Any]:
        """Poll ``check`` until the attempt is CONFIRMED or FAILED.

        Raises ``PaymentTimeout`` once the backoff is exhausted.
        """
        backoff = backoff or Backoff()
        last: Dict[str, Any] = {}
        while not backoff.exhausted:
            backoff.attempted()
            r = await check()
            if r.status_code == 429:
                await sleep(backoff.rate_limited())
                continue
            if r.status_code >= 500:
                await sleep(backoff.interval)
                continue
            if r.status_code >= 400:
                body = r.json()
                raise ProviderError(
                    body.get("detail", f"status check failed ({r.status_code})"),
                    code=body.get("code"),
                )
            last = r.json()
            if last.get("status") in SETTLED:
                return last
            await sleep(backoff.interval)
        raise PaymentTimeout(
            "Payment timeout"
            + (f": {last['result_desc']}" if last.get("result_desc") else "")
        )


async def run_flow(args: argparse.Namespace) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=30.0) as http:
        client = TicketingClient(http, args.base, user_id=args.user)
        tickets = await client.book(args.event, args.quantity)
        ids = [t["id"] for t in tickets]
        print(f"booked {len(ids)} ticket(s): {', '.join(ids)}")

        if args.flow == "mpesa":
            started = await client.mpesa_checkout(ids, args.phone)
            checkout_id = started["checkout_request_id"]
            print(f"STK push sent ({started['amount']} KES), waiting...")
            return await client.wait_for_payment(
                lambda: client.mpesa_status(checkout_id)
            )

        session = await client.card_checkout(ids)
        session_id = session["session_id"]
        if args.flow == "mock":
            r = await http.post(
                f"{args.base}/mockpay/{session_id}/emit",
                data={"t": "succeeded"},
            )
            if r.status_code >= 400:
                r.raise_for_status()
        else:
            print(f"complete payment at {session['url']}")
        return await client.wait_for_payment(
            lambda: client.session_status(session_id)
        )


def main():
    ap = argparse.ArgumentParser(description="EventVerse purchase flow")
    ap.add_argument("--base", default="http://localhost:8000")
    ap.add_argument("--user", required=True)
    ap.add_argument("--event", required=True)
    ap.add_argument("--quantity", type=int, default=1)
    ap.add_argument("--flow", choices=("mock", "card", "mpesa"),
                    default="mock")
    ap.add_argument("--phone", default="")
    args = ap.parse_args()
    result = asyncio.run(run_flow(args))
    print(f"payment {result['status']}: {result.get('result_desc') or ''}")


if __name__ == "__main__":
    main()
