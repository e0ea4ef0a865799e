from __future__ import annotations
from typing import Any, Dict, List, Optional

from loguru import logger

from . import settings
from .errors import NotFoundError, ValidationError
from .helpers import Clock, new_ticket_id, normalize_phone, now_ts
from .infra.timings import timeit
from .model.db import CARD, MOBILE_MONEY, PENDING
from .model.tickets import TicketStore
from .payments.base import CardProvider, CheckoutSession
from .payments.mpesa import MpesaClient, settlement_amount
from .qr import legacy_payload, render_data_url, ticket_url


class Booking:
    """Ticket creation and the start of a payment attempt.

    A payment attempt covers a group of PENDING tickets of one purchaser;
    the provider's correlation id is written onto every ticket in the group
    or onto none of them.
    """

    def __init__(self, store: TicketStore, *, clock: Clock = now_ts,
                 base_url: Optional[str] = None) -> None:
        self.store = store
        self.clock = clock
        self.base_url = base_url or settings.APP_URL

    async def create_tickets(
        self, event_id: str, quantity: int, user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        if quantity > settings.MAX_TICKETS_PER_BOOKING:
            raise ValidationError(
                f"at most {settings.MAX_TICKETS_PER_BOOKING} tickets "
                "per booking"
            )
        event = await self.store.get_event(event_id)
        if event is None:
            raise NotFoundError("Event not found")

        user_id = user_id or settings.GUEST_USER_ID
        created_at = self.clock()
        rows = []
        for _ in range(quantity):
            ticket_id = new_ticket_id()
            rows.append({
                "id": ticket_id,
                "event_id": event_id,
                "user_id": user_id,
                "status": PENDING,
                "price": event["base_price"],
                "quantity": 1,
                "qr_payload": legacy_payload(event_id, ticket_id, user_id),
                "qr_image": render_data_url(
                    ticket_url(ticket_id, self.base_url)
                ),
                "created_at": created_at,
            })
        async with timeit("db.create_tickets"):
            await self.store.create_tickets(rows)
        logger.info(
            "booked {} ticket(s) for event {} by {}",
            quantity, event_id, user_id,
        )
        return await self.store.get_tickets(r["id"] for r in rows)

    async def _pending_group(
        self, ticket_ids: List[str], user_id: str
    ) -> List[Dict[str, Any]]:
        if not ticket_ids:
            raise ValidationError("No tickets found")
        if len(set(ticket_ids)) != len(ticket_ids):
            raise ValidationError("Duplicate ticket ids")
        tickets = [
            t for t in await self.store.get_tickets(ticket_ids)
            if t["user_id"] == user_id and t["status"] == PENDING
        ]
        # all-or-nothing: never charge for a subset
        if len(tickets) != len(ticket_ids):
            raise ValidationError("Invalid tickets")
        if len({t["event_id"] for t in tickets}) != 1:
            raise ValidationError("Tickets must belong to one event")
        return tickets

    async def start_card_checkout(
        self, ticket_ids: List[str], user_id: str, provider: CardProvider,
    ) -> CheckoutSession:
        tickets = await self._pending_group(ticket_ids, user_id)
        event_id = tickets[0]["event_id"]
        title = tickets[0]["event_title"]

        async with timeit("card.create_session"):
            session = await provider.create_session(
                [{
                    "name": f"{title} - Ticket",
                    "unit_amount": t["price"],
                    "quantity": 1,
                } for t in tickets],
                success_url=(
                    f"{self.base_url}/tickets/success"
                    "?session_id={CHECKOUT_SESSION_ID}"
                ),
                cancel_url=f"{self.base_url}/tickets/cancel",
                metadata={
                    "eventId": event_id,
                    "userId": user_id,
                    "ticketCount": str(len(tickets)),
                },
            )

        await self.store.attach_correlation(ticket_ids, user_id, {
            "payment_method": CARD,
            "card_session_id": session["session_id"],
            "payment_started_at": self.clock(),
        })
        logger.info(
            "card session {} covers {} ticket(s)",
            session["session_id"], len(tickets),
        )
        return session

    async def start_mobile_money(
        self, ticket_ids: List[str], user_id: str, phone: str,
        mpesa: MpesaClient,
    ) -> Dict[str, Any]:
        msisdn = normalize_phone(phone)
        if msisdn is None:
            raise ValidationError(
                "Phone number must be in format 2547XXXXXXXX"
            )
        tickets = await self._pending_group(ticket_ids, user_id)
        event_id = tickets[0]["event_id"]
        title = tickets[0]["event_title"]

        total = sum(t["price"] for t in tickets)
        amount = settlement_amount(total, tickets[0]["event_currency"])
        reference = f"EVT{event_id[-8:]}{user_id[-6:]}"

        logger.info(
            "initiating STK push: amount={} KES tickets={} event={}",
            amount, len(tickets), event_id,
        )
        resp = await mpesa.stk_push(
            amount=amount,
            phone=msisdn,
            reference=reference,
            description=f"{title} - {len(tickets)} ticket(s)",
        )

        await self.store.attach_correlation(ticket_ids, user_id, {
            "payment_method": MOBILE_MONEY,
            "mm_checkout_id": resp["CheckoutRequestID"],
            "mm_merchant_id": resp.get("MerchantRequestID"),
            "mm_phone": msisdn,
            "payment_started_at": self.clock(),
        })
        return {
            "checkout_request_id": resp["CheckoutRequestID"],
            "merchant_request_id": resp.get("MerchantRequestID"),
            "customer_message": resp.get("CustomerMessage"),
            "amount": amount,
            "currency": settings.MPESA_CURRENCY,
        }
