from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
    ForeignKey,
    Index,
)


Base = declarative_base()

# ticket status
PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"
CHECKED_IN = "CHECKED_IN"
STATUSES = (PENDING, CONFIRMED, CANCELLED, CHECKED_IN)

# payment methods
CARD = "CARD"
MOBILE_MONEY = "MOBILE_MONEY"

# correlation columns a provider outcome may point at
CARD_SESSION = "card_session_id"
MM_CHECKOUT = "mm_checkout_id"

# the receipt column that belongs to each correlation column
RECEIPT_COLUMN = {
    CARD_SESSION: "card_payment_id",
    MM_CHECKOUT: "mm_receipt",
}


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    base_price = Column(Integer, nullable=False)  # cents
    starts_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    user_id = Column(String, nullable=False, index=True)

    # PENDING | CONFIRMED | CANCELLED | CHECKED_IN
    status = Column(String, nullable=False, default=PENDING)
    price = Column(Integer, nullable=False)  # cents
    quantity = Column(Integer, nullable=False, default=1)
    payment_method = Column(String, nullable=True)

    card_session_id = Column(String, nullable=True, index=True)
    card_payment_id = Column(String, nullable=True)
    mm_checkout_id = Column(String, nullable=True, index=True)
    mm_merchant_id = Column(String, nullable=True)
    mm_phone = Column(String, nullable=True)
    mm_receipt = Column(String, nullable=True)

    qr_payload = Column(String, nullable=False, unique=True)
    qr_image = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    checked_in_at = Column(Float, nullable=True)
    # last checkout or STK push; expiry counts from here when set
    payment_started_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_tickets_event_status", "event_id", "status"),
    )


class CheckIn(Base):
    __tablename__ = "check_ins"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(
        String, ForeignKey("tickets.id"), nullable=False, unique=True
    )
    event_id = Column(String, nullable=False, index=True)
    scanner_id = Column(String, nullable=False)
    checked_in_at = Column(Float, nullable=False)
