import pytest

from conftest import BUYER
from eventverse import settings
from eventverse.booking import Booking
from eventverse.errors import (
    ConflictError, NotFoundError, ProviderError, ValidationError,
)
from eventverse.model.db import CARD, CARD_SESSION, MOBILE_MONEY, PENDING
from eventverse.payments import CardProvider, settlement_amount
from eventverse.payments.base import PaymentOutcome, Succeeded
from eventverse.reconcile import Reconciler


class DecliningProvider(CardProvider):
    name = "declining"

    async def create_session(self, line_items, *, success_url, cancel_url,
                             metadata):
        raise ProviderError("card_declined", code="card_declined")

    def parse_webhook(self, payload, headers):
        return None

    async def retrieve_session(self, session_id):
        raise NotImplementedError


async def book(store, event, n=2, user_id=BUYER):
    tickets = await Booking(store).create_tickets(event["id"], n, user_id)
    return [t["id"] for t in tickets]


class TestCreateTickets:

    @pytest.mark.asyncio
    async def test_one_pending_row_per_unit(self, store, event):
        tickets = await Booking(store).create_tickets(event["id"], 3, BUYER)

        assert len(tickets) == 3
        assert len({t["id"] for t in tickets}) == 3
        for t in tickets:
            assert t["status"] == PENDING
            assert t["price"] == 1000
            assert t["quantity"] == 1
            assert len(t["id"]) == 32
            assert t["qr_payload"] == f"{event['id']}:{t['id']}:{BUYER}"
            assert t["qr_image"].startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_guest_booking(self, store, event):
        [t] = await Booking(store).create_tickets(event["id"], 1, None)
        assert t["user_id"] == settings.GUEST_USER_ID

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1,
                                          settings.MAX_TICKETS_PER_BOOKING + 1])
    async def test_quantity_bounds(self, store, event, quantity):
        with pytest.raises(ValidationError):
            await Booking(store).create_tickets(event["id"], quantity, BUYER)

    @pytest.mark.asyncio
    async def test_unknown_event(self, store, event):
        with pytest.raises(NotFoundError):
            await Booking(store).create_tickets("evt_missing", 1, BUYER)


class TestCardCheckout:

    @pytest.mark.asyncio
    async def test_session_id_lands_on_every_ticket(self, store, event,
                                                    mockpay):
        ids = await book(store, event)

        session = await Booking(store).start_card_checkout(ids, BUYER,
                                                           mockpay)

        psid = session["session_id"]
        assert session["redirect_url"] == f"/mockpay/{psid}"
        s = mockpay.session(psid)
        assert s["amount"] == 2000
        assert psid in s["success_url"]
        assert s["metadata"] == {
            "eventId": event["id"], "userId": BUYER, "ticketCount": "2",
        }
        for t in await store.get_tickets(ids):
            assert t["card_session_id"] == psid
            assert t["payment_method"] == CARD
            assert t["status"] == PENDING

    @pytest.mark.asyncio
    async def test_foreign_ticket_rejects_whole_request(self, store, event,
                                                        mockpay):
        mine = await book(store, event, n=1)
        theirs = await book(store, event, n=1, user_id="user_bob")

        with pytest.raises(ValidationError):
            await Booking(store).start_card_checkout(mine + theirs, BUYER,
                                                     mockpay)

        assert mockpay.sessions == {}
        for t in await store.get_tickets(mine + theirs):
            assert t["card_session_id"] is None

    @pytest.mark.asyncio
    async def test_duplicate_and_empty_ids(self, store, event, mockpay):
        ids = await book(store, event, n=1)
        booking = Booking(store)
        with pytest.raises(ValidationError):
            await booking.start_card_checkout(ids + ids, BUYER, mockpay)
        with pytest.raises(ValidationError):
            await booking.start_card_checkout([], BUYER, mockpay)

    @pytest.mark.asyncio
    async def test_confirmed_ticket_cannot_be_paid_again(
            self, store, event, mockpay, notifier):
        ids = await book(store, event, n=1)
        booking = Booking(store)
        session = await booking.start_card_checkout(ids, BUYER, mockpay)
        await Reconciler(store, notifier).apply(PaymentOutcome(
            column=CARD_SESSION, correlation_id=session["session_id"],
            result=Succeeded(receipt="pi_1"),
        ))

        with pytest.raises(ValidationError):
            await booking.start_card_checkout(ids, BUYER, mockpay)

    @pytest.mark.asyncio
    async def test_provider_failure_persists_nothing(self, store, event):
        ids = await book(store, event)

        with pytest.raises(ProviderError) as exc:
            await Booking(store).start_card_checkout(
                ids, BUYER, DecliningProvider()
            )

        assert exc.value.code == "card_declined"
        assert exc.value.status_code == 502
        for t in await store.get_tickets(ids):
            assert t["card_session_id"] is None
            assert t["payment_method"] is None


class TestMobileMoney:

    @pytest.mark.asyncio
    async def test_stk_push_and_correlation(self, store, event, mpesa,
                                            daraja):
        ids = await book(store, event)

        started = await Booking(store).start_mobile_money(
            ids, BUYER, "+254 712 345 678", mpesa
        )

        assert started["checkout_request_id"] == "ws_CO_191220191020363925"
        assert started["amount"] == 2600
        assert started["currency"] == "KES"
        push = daraja.last_json("/mpesa/stkpush/v1/processrequest")
        assert push["Amount"] == 2600
        assert push["PhoneNumber"] == "254712345678"
        assert push["AccountReference"] == "EVT00000001_"
        assert push["TransactionDesc"] == "Nairobi Tech Night -"
        for t in await store.get_tickets(ids):
            assert t["mm_checkout_id"] == "ws_CO_191220191020363925"
            assert t["mm_merchant_id"] == "29115-34620561-1"
            assert t["mm_phone"] == "254712345678"
            assert t["payment_method"] == MOBILE_MONEY

    @pytest.mark.asyncio
    async def test_rejected_push_persists_nothing(self, store, event, mpesa,
                                                  daraja):
        daraja.push_response = (200, {
            "ResponseCode": "1",
            "ResponseDescription": "Rejected",
            "CustomerMessage": "Unable to lock subscriber",
        })
        ids = await book(store, event)

        with pytest.raises(ProviderError) as exc:
            await Booking(store).start_mobile_money(ids, BUYER,
                                                    "254712345678", mpesa)

        assert exc.value.description == "Unable to lock subscriber"
        for t in await store.get_tickets(ids):
            assert t["mm_checkout_id"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone", ["0712345678", "25571234567", ""])
    async def test_phone_format(self, store, event, mpesa, daraja, phone):
        ids = await book(store, event, n=1)
        with pytest.raises(ValidationError):
            await Booking(store).start_mobile_money(ids, BUYER, phone, mpesa)
        assert daraja.calls == []


class TestAttachCorrelation:

    @pytest.mark.asyncio
    async def test_partial_match_rolls_back(self, store, event, notifier):
        first = await book(store, event, n=1)
        second = await book(store, event, n=1)
        await store.attach_correlation(second, BUYER, {
            "card_session_id": "sess_done",
        })
        await Reconciler(store, notifier).apply(PaymentOutcome(
            column=CARD_SESSION, correlation_id="sess_done",
            result=Succeeded(),
        ))

        with pytest.raises(ConflictError):
            await store.attach_correlation(first + second, BUYER, {
                "card_session_id": "sess_new",
            })

        [t] = await store.get_tickets(first)
        assert t["card_session_id"] is None

    @pytest.mark.asyncio
    async def test_only_correlation_fields(self, store, event):
        ids = await book(store, event, n=1)
        with pytest.raises(ValueError):
            await store.attach_correlation(ids, BUYER, {"status": "CONFIRMED"})


@pytest.mark.parametrize("cents, currency, rates, expected", [
    (2000, "USD", {"USD": 130}, 2600),
    (1001, "USD", {"USD": 130}, 1302),
    (1050, "usd", {"USD": 130}, 1365),
    (150050, "KES", {"KES": 1}, 1501),
    (1550, "EUR", {}, 16),
])
def test_settlement_amount(cents, currency, rates, expected):
    assert settlement_amount(cents, currency, rates) == expected
