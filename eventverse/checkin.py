from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError

from .errors import (
    ConflictError, ForbiddenError, NotFoundError, ValidationError,
)
from .helpers import Clock, now_ts, to_iso
from .model.db import CONFIRMED
from .model.tickets import TicketStore

TICKET_URL_RE = re.compile(r"/tickets/([^/?#]+)")

# scan outcomes that are normal answers, not errors
CHECKED_IN = "CHECKED_IN"
ALREADY_CHECKED_IN = "ALREADY_CHECKED_IN"
WRONG_STATUS = "WRONG_STATUS"


@dataclass
class ScanResult:
    outcome: str
    ticket: Dict[str, Any]
    checked_in_at: Optional[float] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.outcome == CHECKED_IN

    def as_dict(self) -> Dict[str, Any]:
        t = self.ticket
        return {
            "success": self.success,
            "outcome": self.outcome,
            "message": self.message,
            "ticket": {
                "id": t["id"],
                "status": t["status"],
                "user_id": t["user_id"],
                "event": {
                    "id": t["event_id"],
                    "title": t["event_title"],
                    "date": to_iso(t.get("event_starts_at")),
                },
                "checked_in_at": to_iso(self.checked_in_at),
            },
        }


class CheckInDesk:
    """Resolves scanned QR tokens and records at most one check-in per
    ticket."""

    def __init__(self, store: TicketStore, clock: Clock = now_ts) -> None:
        self.store = store
        self.clock = clock

    async def resolve(self, token: str) -> Dict[str, Any]:
        token = (token or "").strip()
        if not token:
            raise ValidationError("QR code data required")
        if "/tickets/" in token:
            m = TICKET_URL_RE.search(token)
            ticket = await self.store.get_ticket(m.group(1)) if m else None
        else:
            if len(token.split(":")) != 3:
                raise ValidationError("Invalid QR code format")
            ticket = await self.store.get_ticket_by_qr(token)
        if ticket is None:
            raise NotFoundError("Ticket not found")
        return ticket

    async def scan(self, token: str, scanner_id: str) -> ScanResult:
        ticket = await self.resolve(token)
        if ticket["organizer_id"] != scanner_id:
            raise ForbiddenError()

        existing = await self.store.get_check_in(ticket["id"])
        if existing is not None:
            return self._already(ticket, existing)

        if ticket["status"] != CONFIRMED:
            return ScanResult(
                WRONG_STATUS, ticket,
                message=(
                    f"Ticket status is {ticket['status']}. "
                    "Must be CONFIRMED."
                ),
            )

        ts = self.clock()
        try:
            await self.store.record_check_in(
                ticket["id"], ticket["event_id"], scanner_id, ts
            )
        except (IntegrityError, ConflictError):
            # lost a race with another scan: report the winner's check-in
            existing = await self.store.get_check_in(ticket["id"])
            if existing is None:
                raise
            return self._already(
                await self.store.get_ticket(ticket["id"]) or ticket, existing
            )

        logger.info(
            "ticket {} checked in for event {} by {}",
            ticket["id"], ticket["event_id"], scanner_id,
        )
        ticket = {**ticket, "status": CHECKED_IN, "checked_in_at": ts}
        return ScanResult(
            CHECKED_IN, ticket, checked_in_at=ts,
            message="Ticket checked in successfully",
        )

    @staticmethod
    def _already(ticket: Dict[str, Any],
                 check_in: Dict[str, Any]) -> ScanResult:
        return ScanResult(
            ALREADY_CHECKED_IN, ticket,
            checked_in_at=check_in["checked_in_at"],
            message="Ticket already checked in",
        )

    async def attendance(
        self, event_id: str, organizer_id: str
    ) -> Dict[str, Any]:
        event = await self.store.get_event(event_id)
        if event is None or event["organizer_id"] != organizer_id:
            raise ForbiddenError()
        report = await self.store.attendance(event_id)
        checked_in = len(report["check_ins"])
        # checked-in tickets have left CONFIRMED; count them as sold
        total = report["confirmed"] + checked_in
        rate = (checked_in / total * 100) if total else 0.0
        return {
            "check_ins": [{
                "ticket_id": c["ticket_id"],
                "user_id": c["user_id"],
                "scanner_id": c["scanner_id"],
                "checked_in_at": to_iso(c["checked_in_at"]),
            } for c in report["check_ins"]],
            "stats": {
                "total_tickets": total,
                "checked_in_count": checked_in,
                "attendance_rate": round(rate, 2),
            },
        }
