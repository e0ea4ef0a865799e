from __future__ import annotations
from typing import Optional, Dict, Any, List, Iterable
from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated
from ..errors import ConflictError
from .db import (
    PENDING, CONFIRMED, CANCELLED, CHECKED_IN, RECEIPT_COLUMN,
)

# columns a caller may name when selecting or stamping correlation ids
_CORRELATION_FIELDS = {
    "payment_method",
    "card_session_id",
    "mm_checkout_id",
    "mm_merchant_id",
    "mm_phone",
    "payment_started_at",
}

_TICKET_COLUMNS = """
    t.id, t.event_id, t.user_id, t.status, t.price, t.quantity,
    t.payment_method, t.card_session_id, t.card_payment_id,
    t.mm_checkout_id, t.mm_merchant_id, t.mm_phone, t.mm_receipt,
    t.qr_payload, t.qr_image, t.created_at, t.checked_in_at,
    t.payment_started_at,
    e.organizer_id, e.title AS event_title, e.currency AS event_currency,
    e.starts_at AS event_starts_at
"""


def _correlation_column(column: str) -> str:
    if column not in RECEIPT_COLUMN:
        raise ValueError(f"unknown correlation column: {column}")
    return column


class TicketStore:
    """Ticket and check-in persistence.

    Every status change is a single conditional UPDATE guarded by the
    current status; its returned rows are the tickets this call moved.
    """

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT id, organizer_id, title, currency, base_price,
                         starts_at
                  FROM events WHERE id = :id
                """), {"id": event_id})).mappings().first()
        return dict(row) if row else None

    async def get_ticket(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  SELECT {_TICKET_COLUMNS}
                  FROM tickets t JOIN events e ON e.id = t.event_id
                  WHERE t.id = :id
                """), {"id": ticket_id})).mappings().first()
        return dict(row) if row else None

    async def get_ticket_by_qr(
            self, payload: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  SELECT {_TICKET_COLUMNS}
                  FROM tickets t JOIN events e ON e.id = t.event_id
                  WHERE t.qr_payload = :p
                """), {"p": payload})).mappings().first()
        return dict(row) if row else None

    async def get_tickets(self, ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = tuple(ids)
        if not ids:
            return []
        stmt = text(f"""
          SELECT {_TICKET_COLUMNS}
          FROM tickets t JOIN events e ON e.id = t.event_id
          WHERE t.id IN :ids
        """).bindparams(bindparam("ids", expanding=True))
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    stmt, {"ids": ids}
                )).mappings().all()
        return [dict(r) for r in rows]

    async def find_by_correlation(
        self, column: str, value: str,
        *, status: Optional[str] = None, user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        col = _correlation_column(column)
        sql = f"""
          SELECT {_TICKET_COLUMNS}
          FROM tickets t JOIN events e ON e.id = t.event_id
          WHERE t.{col} = :v
        """
        params: Dict[str, Any] = {"v": value}
        if status is not None:
            sql += " AND t.status = :status"
            params["status"] = status
        if user_id is not None:
            sql += " AND t.user_id = :uid"
            params["uid"] = user_id
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    text(sql), params
                )).mappings().all()
        return [dict(r) for r in rows]

    async def pending_correlations(
        self, column: str, *, user_id: Optional[str] = None,
    ) -> Dict[str, List[str]]:
        """{correlation value: [ticket ids]} over PENDING tickets."""
        col = _correlation_column(column)
        sql = f"""
          SELECT id, {col} AS corr FROM tickets
          WHERE status = :pending AND {col} IS NOT NULL
        """
        params: Dict[str, Any] = {"pending": PENDING}
        if user_id is not None:
            sql += " AND user_id = :uid"
            params["uid"] = user_id
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(sql), params)).all()
        groups: Dict[str, List[str]] = {}
        for ticket_id, corr in rows:
            groups.setdefault(corr, []).append(ticket_id)
        return groups

    async def count_sold(self, event_id: str) -> int:
        async with self.gated():
            async with self.db.begin():
                n = (await self.db.execute(text("""
                  SELECT COUNT(*) FROM tickets
                  WHERE event_id = :eid AND status IN (:c, :ci)
                """), {
                    "eid": event_id, "c": CONFIRMED, "ci": CHECKED_IN,
                })).scalar_one()
        return int(n)

    async def get_check_in(
            self, ticket_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT id, ticket_id, event_id, scanner_id, checked_in_at
                  FROM check_ins WHERE ticket_id = :tid
                """), {"tid": ticket_id})).mappings().first()
        return dict(row) if row else None

    async def attendance(self, event_id: str) -> Dict[str, Any]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT c.ticket_id, c.scanner_id, c.checked_in_at,
                         t.user_id
                  FROM check_ins c JOIN tickets t ON t.id = c.ticket_id
                  WHERE c.event_id = :eid
                  ORDER BY c.checked_in_at DESC
                """), {"eid": event_id})).mappings().all()
                confirmed = (await self.db.execute(text("""
                  SELECT COUNT(*) FROM tickets
                  WHERE event_id = :eid AND status = :c
                """), {"eid": event_id, "c": CONFIRMED})).scalar_one()
        return {
            "check_ins": [dict(r) for r in rows],
            "confirmed": int(confirmed),
        }

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    async def create_tickets(self, rows: List[Dict[str, Any]]) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO tickets(
                    id, event_id, user_id, status, price, quantity,
                    qr_payload, qr_image, created_at
                  ) VALUES (
                    :id, :event_id, :user_id, :status, :price, :quantity,
                    :qr_payload, :qr_image, :created_at
                  )
                """), rows)

    async def attach_correlation(
        self, ticket_ids: List[str], user_id: str, fields: Dict[str, Any],
    ) -> int:
        """Stamp correlation fields on all of ``ticket_ids`` or on none.

        Only rows still PENDING and owned by ``user_id`` match; if fewer
        than requested match, the transaction is rolled back.
        """
        unknown = set(fields) - _CORRELATION_FIELDS
        if unknown:
            raise ValueError(f"not correlation fields: {sorted(unknown)}")
        assignments = ", ".join(f"{k} = :{k}" for k in fields)
        stmt = text(f"""
          UPDATE tickets SET {assignments}
          WHERE id IN :ids AND user_id = :uid AND status = :pending
        """).bindparams(bindparam("ids", expanding=True))
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(stmt, {
                    **fields,
                    "ids": tuple(ticket_ids),
                    "uid": user_id,
                    "pending": PENDING,
                })
                if result.rowcount != len(ticket_ids):
                    # leaving the block with an exception rolls back
                    raise ConflictError(
                        "Tickets changed while starting payment"
                    )
        return len(ticket_ids)

    async def confirm_pending(
        self, column: str, value: str, receipt: Optional[str],
    ) -> List[Dict[str, Any]]:
        """PENDING -> CONFIRMED for one correlation group.

        Returns the (id, event_id) rows this statement transitioned; empty
        when another delivery got there first.
        """
        col = _correlation_column(column)
        receipt_col = RECEIPT_COLUMN[col]
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(f"""
                  UPDATE tickets
                  SET status = :confirmed,
                      {receipt_col} = COALESCE(:receipt, {receipt_col})
                  WHERE {col} = :v AND status = :pending
                  RETURNING id, event_id
                """), {
                    "confirmed": CONFIRMED,
                    "receipt": receipt,
                    "v": value,
                    "pending": PENDING,
                })).mappings().all()
        return [dict(r) for r in rows]

    async def cancel_pending_before(
            self, cutoff: float
    ) -> List[Dict[str, Any]]:
        """Cancel PENDING tickets idle since before ``cutoff``.

        Idle time counts from the latest payment attempt, or from booking
        when no attempt was made.
        """
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  UPDATE tickets SET status = :cancelled
                  WHERE status = :pending
                    AND COALESCE(payment_started_at, created_at) < :cutoff
                  RETURNING id, event_id
                """), {
                    "cancelled": CANCELLED,
                    "pending": PENDING,
                    "cutoff": cutoff,
                })).mappings().all()
        return [dict(r) for r in rows]

    async def record_check_in(
        self, ticket_id: str, event_id: str, scanner_id: str, ts: float,
    ) -> None:
        """Insert the CheckIn row and move the ticket to CHECKED_IN.

        Both happen in one transaction. A concurrent scan that already
        inserted the row makes this raise ``IntegrityError``; a ticket that
        left CONFIRMED meanwhile raises ``ConflictError``. Either way nothing
        is written.
        """
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO check_ins(
                    ticket_id, event_id, scanner_id, checked_in_at
                  ) VALUES (:tid, :eid, :sid, :ts)
                """), {
                    "tid": ticket_id, "eid": event_id,
                    "sid": scanner_id, "ts": ts,
                })
                result = await self.db.execute(text("""
                  UPDATE tickets
                  SET status = :checked_in, checked_in_at = :ts
                  WHERE id = :tid AND status = :confirmed
                """), {
                    "checked_in": CHECKED_IN,
                    "ts": ts,
                    "tid": ticket_id,
                    "confirmed": CONFIRMED,
                })
                if result.rowcount != 1:
                    raise ConflictError("Ticket is no longer CONFIRMED")

    async def list_ticket_ids(self) -> List[str]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    text("SELECT id FROM tickets ORDER BY created_at")
                )).all()
        return [r[0] for r in rows]

    async def set_qr_image(self, ticket_id: str, image: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("UPDATE tickets SET qr_image = :img WHERE id = :id"),
                    {"img": image, "id": ticket_id},
                )
