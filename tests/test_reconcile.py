import asyncio

import pytest

from conftest import BUYER, FakeClock, RecordingNotifier
from eventverse.booking import Booking
from eventverse.errors import NotFoundError, ProviderError
from eventverse.model.db import (
    CANCELLED, CARD, CARD_SESSION, CONFIRMED, MM_CHECKOUT, PENDING,
)
from eventverse.payments.base import Failed, PaymentOutcome, Pending, Succeeded
from eventverse.reconcile import Reconciler


async def book_group(store, event, n=2, session_id="sess_1", clock=None):
    booking = Booking(store, clock=clock) if clock else Booking(store)
    tickets = await booking.create_tickets(event["id"], n, BUYER)
    ids = [t["id"] for t in tickets]
    await store.attach_correlation(ids, BUYER, {
        "payment_method": CARD,
        "card_session_id": session_id,
    })
    return ids


def paid(session_id="sess_1", receipt="pi_1"):
    return PaymentOutcome(
        column=CARD_SESSION, correlation_id=session_id,
        result=Succeeded(receipt=receipt, amount=2000),
    )


async def statuses(store, ids):
    return sorted(t["status"] for t in await store.get_tickets(ids))


class TestApply:

    @pytest.mark.asyncio
    async def test_success_confirms_the_whole_group(self, store, event,
                                                    notifier):
        ids = await book_group(store, event)
        rec = await Reconciler(store, notifier).apply(paid())

        assert sorted(rec.transitioned) == sorted(ids)
        assert not rec.already_handled
        tickets = await store.get_tickets(ids)
        assert {t["status"] for t in tickets} == {CONFIRMED}
        assert {t["card_payment_id"] for t in tickets} == {"pi_1"}
        assert notifier.sent == [(event["id"], 2)]

    @pytest.mark.asyncio
    async def test_redelivery_is_a_noop(self, store, event, notifier):
        ids = await book_group(store, event)
        reconciler = Reconciler(store, notifier)
        await reconciler.apply(paid())

        again = await reconciler.apply(paid(receipt="pi_other"))

        assert again.already_handled
        assert again.transitioned == []
        assert notifier.sent == [(event["id"], 2)]
        tickets = await store.get_tickets(ids)
        assert {t["card_payment_id"] for t in tickets} == {"pi_1"}

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_transition_once(self, new_store,
                                                         event, notifier):
        ids = await book_group(new_store(), event)
        a = Reconciler(new_store(), notifier)
        b = Reconciler(new_store(), notifier)

        results = await asyncio.gather(a.apply(paid()), b.apply(paid()))

        moved = [r.transitioned for r in results if r.transitioned]
        assert len(moved) == 1
        assert sorted(moved[0]) == sorted(ids)
        assert len(notifier.sent) == 1
        assert await statuses(new_store(), ids) == [CONFIRMED, CONFIRMED]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [
        Failed(reason="Request cancelled by user", code="1032"),
        Pending(reason="unpaid"),
    ])
    async def test_unsuccessful_outcome_keeps_tickets_pending(
            self, store, event, notifier, result):
        ids = await book_group(store, event)
        outcome = PaymentOutcome(
            column=CARD_SESSION, correlation_id="sess_1", result=result,
        )

        rec = await Reconciler(store, notifier).apply(outcome)

        assert rec.transitioned == []
        assert not rec.already_handled
        assert await statuses(store, ids) == [PENDING, PENDING]
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_retry_after_failure_confirms(self, store, event, notifier):
        ids = await book_group(store, event)
        reconciler = Reconciler(store, notifier)
        await reconciler.apply(PaymentOutcome(
            column=CARD_SESSION, correlation_id="sess_1",
            result=Failed(reason="card declined"),
        ))

        rec = await reconciler.apply(paid())

        assert sorted(rec.transitioned) == sorted(ids)

    @pytest.mark.asyncio
    async def test_unknown_correlation_is_already_handled(self, store, event,
                                                          notifier):
        rec = await Reconciler(store, notifier).apply(PaymentOutcome(
            column=MM_CHECKOUT, correlation_id="ws_CO_unknown",
            result=Succeeded(receipt="NLJ7RT61SV"),
        ))
        assert rec.already_handled
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_undo_confirmation(self, store,
                                                               event):
        class Broken:
            async def ticket_count_changed(self, event_id, ticket_count):
                raise ConnectionError("redis down")

        ids = await book_group(store, event)
        rec = await Reconciler(store, Broken()).apply(paid())

        assert sorted(rec.transitioned) == sorted(ids)
        assert await statuses(store, ids) == [CONFIRMED, CONFIRMED]

    @pytest.mark.asyncio
    async def test_count_includes_earlier_sales(self, store, event, notifier):
        await book_group(store, event, n=1, session_id="sess_a")
        await book_group(store, event, n=2, session_id="sess_b")
        reconciler = Reconciler(store, notifier)

        await reconciler.apply(paid("sess_a"))
        await reconciler.apply(paid("sess_b"))

        assert notifier.sent == [(event["id"], 1), (event["id"], 3)]


class TestCheckStatus:

    @pytest.mark.asyncio
    async def test_poll_confirms_and_then_answers_locally(self, store, event,
                                                          notifier):
        ids = await book_group(store, event)
        fetched = []

        async def fetch(session_id):
            fetched.append(session_id)
            return paid(session_id)

        reconciler = Reconciler(store, notifier)
        report = await reconciler.check_status(
            CARD_SESSION, "sess_1", BUYER, fetch
        )
        assert report.status == "CONFIRMED"
        assert report.updated == len(ids)
        assert report.result_code == "0"

        again = await reconciler.check_status(
            CARD_SESSION, "sess_1", BUYER, fetch
        )
        assert again.status == "CONFIRMED"
        assert again.updated == 0
        assert fetched == ["sess_1"]

    @pytest.mark.asyncio
    async def test_failed_poll_reports_failed_and_keeps_pending(
            self, store, event, notifier):
        ids = await book_group(store, event)

        async def fetch(session_id):
            return PaymentOutcome(
                column=CARD_SESSION, correlation_id=session_id,
                result=Failed(reason="Request cancelled by user",
                              code="1032"),
            )

        report = await Reconciler(store, notifier).check_status(
            CARD_SESSION, "sess_1", BUYER, fetch
        )
        assert report.status == "FAILED"
        assert report.result_code == "1032"
        assert report.result_desc == "Request cancelled by user"
        assert await statuses(store, ids) == [PENDING, PENDING]

    @pytest.mark.asyncio
    async def test_unknown_or_foreign_correlation_is_not_found(
            self, store, event, notifier):
        await book_group(store, event)

        async def fetch(session_id):
            raise AssertionError("provider must not be asked")

        reconciler = Reconciler(store, notifier)
        with pytest.raises(NotFoundError):
            await reconciler.check_status(
                CARD_SESSION, "sess_missing", BUYER, fetch
            )
        with pytest.raises(NotFoundError):
            await reconciler.check_status(
                CARD_SESSION, "sess_1", "user_mallory", fetch
            )


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_counts_updates_and_errors(self, store, event,
                                                   notifier):
        await book_group(store, event, n=2, session_id="sess_ok")
        await book_group(store, event, n=1, session_id="sess_broken")
        await book_group(store, event, n=1, session_id="sess_open")

        async def fetch(session_id):
            if session_id == "sess_broken":
                raise ProviderError("rate limited", code="429",
                                    retryable=True)
            if session_id == "sess_open":
                return PaymentOutcome(
                    column=CARD_SESSION, correlation_id=session_id,
                    result=Pending(reason="unpaid"),
                )
            return paid(session_id)

        report = await Reconciler(store, notifier).sweep(
            CARD_SESSION, fetch, user_id=BUYER
        )
        assert (report.total, report.updated, report.errors) == (4, 2, 1)

    @pytest.mark.asyncio
    async def test_sweep_filters_by_purchaser(self, store, event, notifier):
        await book_group(store, event, n=1, session_id="sess_1")

        async def fetch(session_id):
            raise AssertionError("no tickets for this user")

        report = await Reconciler(store, notifier).sweep(
            CARD_SESSION, fetch, user_id="someone_else"
        )
        assert report.total == 0


class TestExpirePending:

    @pytest.mark.asyncio
    async def test_disabled_when_ttl_is_zero(self, store, event, notifier):
        ids = await book_group(store, event)
        assert await Reconciler(store, notifier).expire_pending(0) == []
        assert await statuses(store, ids) == [PENDING, PENDING]

    @pytest.mark.asyncio
    async def test_cancels_only_stale_pending(self, store, event, notifier):
        clock = FakeClock()
        stale = await book_group(store, event, session_id="sess_old",
                                 clock=clock)
        paid_ids = await book_group(store, event, session_id="sess_paid",
                                    clock=clock)
        clock.advance(3600)
        fresh = await book_group(store, event, n=1, session_id="sess_new",
                                 clock=clock)
        reconciler = Reconciler(store, notifier, clock=clock)
        await reconciler.apply(paid("sess_paid"))

        expired = await reconciler.expire_pending(600)

        assert sorted(expired) == sorted(stale)
        assert await statuses(store, stale) == [CANCELLED, CANCELLED]
        assert await statuses(store, paid_ids) == [CONFIRMED, CONFIRMED]
        assert await statuses(store, fresh) == [PENDING]

    @pytest.mark.asyncio
    async def test_late_success_after_expiry_is_a_noop(self, store, event):
        clock = FakeClock()
        await book_group(store, event, clock=clock)
        clock.advance(3600)
        notifier = RecordingNotifier()
        reconciler = Reconciler(store, notifier, clock=clock)
        await reconciler.expire_pending(600)

        rec = await reconciler.apply(paid())
        assert rec.already_handled

        async def fetch(session_id):
            raise AssertionError("settled locally")

        report = await reconciler.check_status(
            CARD_SESSION, "sess_1", BUYER, fetch
        )
        assert report.status == "FAILED"

    @pytest.mark.asyncio
    async def test_ttl_counts_from_latest_payment_attempt(
            self, store, event, notifier, clock, mpesa):
        booking = Booking(store, clock=clock)
        ids = [t["id"] for t in
               await booking.create_tickets(event["id"], 2, BUYER)]
        clock.advance(540)
        started = await booking.start_mobile_money(
            ids, BUYER, "254712345678", mpesa
        )
        [ticket, _] = await store.get_tickets(ids)
        assert ticket["payment_started_at"] == clock()

        clock.advance(120)
        reconciler = Reconciler(store, notifier, clock=clock)
        assert await reconciler.expire_pending(600) == []

        rec = await reconciler.apply(PaymentOutcome(
            column=MM_CHECKOUT,
            correlation_id=started["checkout_request_id"],
            result=Succeeded(receipt="QWE123", amount=2600),
        ))
        assert not rec.already_handled
        assert await statuses(store, ids) == [CONFIRMED, CONFIRMED]

    @pytest.mark.asyncio
    async def test_abandoned_attempt_still_expires(self, store, event,
                                                   notifier, clock, mpesa):
        booking = Booking(store, clock=clock)
        ids = [t["id"] for t in
               await booking.create_tickets(event["id"], 1, BUYER)]
        await booking.start_mobile_money(ids, BUYER, "254712345678", mpesa)
        clock.advance(601)

        reconciler = Reconciler(store, notifier, clock=clock)
        assert await reconciler.expire_pending(600) == ids
        assert await statuses(store, ids) == [CANCELLED]
