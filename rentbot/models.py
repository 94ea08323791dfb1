"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, DateTime, Float, Integer, JSON, String, Text

from rentbot.storage import Base, utcnow


class Message(Base):
    """
    Append-only log of inbound, outbound and system events.

    Table: messages
    The latest system-authored row carrying meta["state"] mirrors the
    conversation state; rows are only updated to set handled/follow-up flags.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)  # user | agent | system
    external_id = Column(String, nullable=True, index=True)  # provider message id
    kind = Column(String, nullable=False, default="unknown")  # text | interactive | unknown
    body_text = Column(Text, nullable=False, default="")
    raw_payload = Column(JSON, nullable=True)
    delivery_status = Column(String, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    conversation_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class WebhookEvent(Base):
    """Raw copy of every inbound HTTP delivery. Write-once, never read by the router."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False, index=True)
    headers = Column(JSON, nullable=False, default=dict)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class Conversation(Base):
    """
    Per-phone conversation aggregate.

    version is bumped on every state write; writers compare-and-swap on it.
    """
    __tablename__ = "conversations"

    phone = Column(String, primary_key=True)
    state = Column(String, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Listing(Base):
    """Rental property record, owned by the lister's phone-number account."""
    __tablename__ = "listings"

    id = Column(String(32), primary_key=True)
    short_id = Column(String(4), nullable=False, unique=True, index=True)
    title = Column(String, nullable=False)
    lister_phone_number = Column(String, nullable=False, index=True)
    suburb = Column(String, nullable=False, default="")
    property_category = Column(String, nullable=False, default="residential", index=True)
    property_type = Column(String, nullable=False, default="", index=True)
    price_per_month = Column(Float, nullable=False, default=0)
    deposit = Column(Float, nullable=True)
    bedrooms = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False, default="")
    features = Column(JSON, nullable=False, default=list)
    images = Column(JSON, nullable=False, default=list)
    contact_name = Column(String, nullable=False, default="")
    contact_phone = Column(String, nullable=False, default="")
    contact_whatsapp = Column(String, nullable=False, default="")
    contact_email = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="published", index=True)  # draft | published
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ContactPayment(Base):
    """Pending/paid request to unlock a listing's contact details."""
    __tablename__ = "contact_payments"

    id = Column(String(8), primary_key=True)
    phone = Column(String, nullable=False, index=True)
    listing_id = Column(String(32), nullable=False)
    amount = Column(Float, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")  # pending | paid
    created_at = Column(DateTime, nullable=False, default=utcnow)
    paid_at = Column(DateTime, nullable=True)
