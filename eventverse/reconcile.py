"""
Apply payment provider outcomes to tickets.

Webhooks, status polls and sweeps all funnel into ``Reconciler.apply``.
The only write is ``TicketStore.confirm_pending``: one UPDATE matching the
correlation id AND status PENDING. Whichever delivery runs it first moves
the tickets; every later or concurrent delivery matches zero rows and is a
no-op. Failed and cancelled attempts leave tickets PENDING so the buyer
can pay again against the same rows.
"""
from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from loguru import logger

from .errors import NotFoundError, TicketingError
from .helpers import Clock, now_ts
from .infra.timings import timeit
from .model.db import PENDING, CANCELLED
from .model.tickets import TicketStore
from .notify import Notifier, fan_out
from .payments.base import Failed, PaymentOutcome, Succeeded

FetchOutcome = Callable[[str], Awaitable[PaymentOutcome]]

# caller-facing status of one payment attempt
STATUS_CONFIRMED = "CONFIRMED"
STATUS_PENDING = "PENDING"
STATUS_FAILED = "FAILED"


@dataclass
class Reconciliation:
    outcome: PaymentOutcome
    transitioned: List[str] = field(default_factory=list)
    already_handled: bool = False


@dataclass
class StatusReport:
    status: str
    correlation_id: str
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    updated: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "correlation_id": self.correlation_id,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "updated": self.updated,
        }


@dataclass
class SweepReport:
    total: int = 0
    updated: int = 0
    errors: int = 0


def attempt_status(outcome: PaymentOutcome) -> str:
    if isinstance(outcome.result, Succeeded):
        return STATUS_CONFIRMED
    if isinstance(outcome.result, Failed):
        return STATUS_FAILED
    return STATUS_PENDING


class Reconciler:

    def __init__(self, store: TicketStore, notifier: Notifier,
                 clock: Clock = now_ts) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock

    async def apply(self, outcome: PaymentOutcome) -> Reconciliation:
        pending = await self.store.find_by_correlation(
            outcome.column, outcome.correlation_id, status=PENDING
        )
        if not pending:
            logger.info(
                "{} {} already handled, nothing PENDING",
                outcome.column, outcome.correlation_id,
            )
            return Reconciliation(outcome, already_handled=True)

        result = outcome.result
        if not isinstance(result, Succeeded):
            logger.info(
                "payment {} for {} ticket(s) not confirmed: {}",
                outcome.correlation_id, len(pending), result,
            )
            return Reconciliation(outcome)

        async with timeit("reconcile.confirm"):
            rows = await self.store.confirm_pending(
                outcome.column, outcome.correlation_id, result.receipt
            )
        if not rows:
            # a concurrent delivery confirmed the group between our read
            # and the conditional update
            return Reconciliation(outcome, already_handled=True)

        logger.info(
            "payment {} confirmed {} ticket(s), receipt={}",
            outcome.correlation_id, len(rows), result.receipt,
        )
        await self._notify(Counter(r["event_id"] for r in rows))
        return Reconciliation(outcome, transitioned=[r["id"] for r in rows])

    async def _notify(self, events: Counter) -> None:
        counts = []
        for event_id in events:
            try:
                counts.append(
                    (event_id, await self.store.count_sold(event_id))
                )
            except Exception:
                logger.opt(exception=True).warning(
                    "could not count tickets for event {}", event_id
                )
        await fan_out(self.notifier, counts)

    async def check_status(
        self, column: str, correlation_id: str, user_id: Optional[str],
        fetch: FetchOutcome,
    ) -> StatusReport:
        """Caller-driven poll: ask the provider now and apply the answer.

        ``user_id`` restricts the lookup to the caller's own tickets;
        None means any ticket (operator tools).
        """
        tickets = await self.store.find_by_correlation(
            column, correlation_id, user_id=user_id
        )
        if not tickets:
            raise NotFoundError("Checkout request not found")
        if not any(t["status"] == PENDING for t in tickets):
            status = (
                STATUS_CONFIRMED
                if any(t["status"] != CANCELLED for t in tickets)
                else STATUS_FAILED
            )
            return StatusReport(status=status, correlation_id=correlation_id)

        outcome = await fetch(correlation_id)
        rec = await self.apply(outcome)
        result = outcome.result
        code = getattr(result, "code", None)
        desc = getattr(result, "reason", None)
        return StatusReport(
            status=attempt_status(outcome),
            correlation_id=correlation_id,
            result_code=(
                "0" if isinstance(result, Succeeded) else code
            ),
            result_desc=desc,
            updated=len(rec.transitioned),
        )

    async def sweep(
        self, column: str, fetch: FetchOutcome,
        *, user_id: Optional[str] = None,
    ) -> SweepReport:
        """Re-query the provider for every PENDING group with a
        correlation id. A failing lookup is counted, not raised."""
        groups = await self.store.pending_correlations(
            column, user_id=user_id
        )
        report = SweepReport(total=sum(len(v) for v in groups.values()))
        for correlation_id, ticket_ids in groups.items():
            try:
                outcome = await fetch(correlation_id)
                rec = await self.apply(outcome)
            except TicketingError as e:
                logger.warning(
                    "sweep: could not verify {} ({} ticket(s)): {}",
                    correlation_id, len(ticket_ids), e.message,
                )
                report.errors += len(ticket_ids)
                continue
            report.updated += len(rec.transitioned)
        logger.info(
            "sweep over {}: total={} updated={} errors={}",
            column, report.total, report.updated, report.errors,
        )
        return report

    async def expire_pending(self, ttl_seconds: int) -> List[str]:
        """Cancel PENDING tickets idle for more than ``ttl_seconds``.

        A ticket is idle since its latest payment attempt, or since booking
        if payment never started.

        Disabled (returns nothing) when ``ttl_seconds`` is not positive.
        """
        if ttl_seconds <= 0:
            return []
        rows = await self.store.cancel_pending_before(
            self.clock() - ttl_seconds
        )
        if rows:
            logger.info("expired {} PENDING ticket(s)", len(rows))
        return [r["id"] for r in rows]
