"""
Per-phone conversation state.

The Conversation row is the authoritative state and is written with a
compare-and-swap on its version. Every write also appends a system Message
carrying meta["state"], so the message log replays the whole conversation.
Phones with no Conversation row fall back to the latest system Message
that carries a state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rentbot.metrics import record_transition
from rentbot.models import Conversation, Message
from rentbot.storage import utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# States
# =============================================================================

AWAITING_MENU_CHOICE = "AWAITING_MENU_CHOICE"
LISTING_WAIT_TITLE = "LISTING_WAIT_TITLE"
LISTING_WAIT_SUBURB = "LISTING_WAIT_SUBURB"
LISTING_WAIT_TYPE = "LISTING_WAIT_TYPE"
LISTING_WAIT_PRICE = "LISTING_WAIT_PRICE"
LISTING_WAIT_BEDS = "LISTING_WAIT_BEDS"
LISTING_WAIT_DESC = "LISTING_WAIT_DESC"
LISTING_CREATED = "LISTING_CREATED"
SEARCH_WAIT_AREA_BUDGET = "SEARCH_WAIT_AREA_BUDGET"
SEARCH_RESULTS = "SEARCH_RESULTS"
AWAITING_LIST_SELECTION = "AWAITING_LIST_SELECTION"
CONTACT_REVEALED = "CONTACT_REVEALED"
CONTACT_PAYMENT_PENDING = "CONTACT_PAYMENT_PENDING"
SHOW_PURCHASES = "SHOW_PURCHASES"

LISTING_STEPS = [
    LISTING_WAIT_TITLE,
    LISTING_WAIT_SUBURB,
    LISTING_WAIT_TYPE,
    LISTING_WAIT_PRICE,
    LISTING_WAIT_BEDS,
    LISTING_WAIT_DESC,
]

TERMINAL_STATES = {LISTING_CREATED, SEARCH_RESULTS, CONTACT_REVEALED, CONTACT_PAYMENT_PENDING, SHOW_PURCHASES}

# Where a menu choice can lead
MENU_TARGETS = {AWAITING_MENU_CHOICE, LISTING_WAIT_TITLE, SEARCH_WAIT_AREA_BUDGET, SHOW_PURCHASES}

# Reachable from any state: reset/expiry, CONTACT, completed search Flow, PAID
GLOBAL_TARGETS = {AWAITING_MENU_CHOICE, CONTACT_PAYMENT_PENDING, SEARCH_RESULTS, CONTACT_REVEALED}

ALLOWED_TRANSITIONS: dict[Optional[str], set[str]] = {
    None: {AWAITING_MENU_CHOICE},
    AWAITING_MENU_CHOICE: set(MENU_TARGETS),
    LISTING_WAIT_TITLE: {LISTING_WAIT_SUBURB},
    LISTING_WAIT_SUBURB: {LISTING_WAIT_TYPE},
    LISTING_WAIT_TYPE: {LISTING_WAIT_PRICE},
    LISTING_WAIT_PRICE: {LISTING_WAIT_BEDS},
    LISTING_WAIT_BEDS: {LISTING_WAIT_DESC},
    LISTING_WAIT_DESC: {LISTING_CREATED},
    LISTING_CREATED: set(MENU_TARGETS),
    SEARCH_WAIT_AREA_BUDGET: {SEARCH_RESULTS},
    SEARCH_RESULTS: {CONTACT_REVEALED, AWAITING_LIST_SELECTION} | MENU_TARGETS,
    AWAITING_LIST_SELECTION: {CONTACT_REVEALED},
    CONTACT_REVEALED: set(MENU_TARGETS),
    CONTACT_PAYMENT_PENDING: set(MENU_TARGETS),
    SHOW_PURCHASES: set(MENU_TARGETS),
}


def is_valid_transition(previous: Optional[str], new: str) -> bool:
    """Whether previous -> new is an edge of the conversation graph (self-loops included)."""
    if previous == new or new in GLOBAL_TARGETS:
        return True
    return new in ALLOWED_TRANSITIONS.get(previous, set())


# =============================================================================
# Store
# =============================================================================

class StaleStateError(Exception):
    """Another delivery for the same phone wrote a newer state first."""
    pass


@dataclass
class StateSnapshot:
    state: str
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    updated_at: Optional[datetime] = None
    source: str = "conversation"


def get_state(db: Session, phone: str) -> Optional[StateSnapshot]:
    """
    Current state for a phone, or None for a fresh conversation.

    The returned metadata always contains "state".
    """
    conversation = db.get(Conversation, phone)
    if conversation is not None and conversation.state:
        metadata = dict(conversation.meta or {})
        metadata["state"] = conversation.state
        return StateSnapshot(
            state=conversation.state,
            metadata=metadata,
            version=conversation.version,
            updated_at=conversation.updated_at,
        )

    # Only system rows count; a user message must never be read as state
    message = (
        db.query(Message)
        .filter(
            Message.phone == phone,
            Message.author == "system",
            Message.meta["state"].as_string().is_not(None),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
        .first()
    )
    if message is None:
        return None

    logger.info(f"State for {phone} replayed from message log")
    return StateSnapshot(
        state=message.meta["state"],
        metadata=dict(message.meta),
        version=conversation.version if conversation is not None else 0,
        updated_at=message.created_at,
        source="log",
    )


def set_state(
    db: Session,
    phone: str,
    text: str,
    metadata: dict[str, Any],
    expected_version: int = 0,
    previous_state: Optional[str] = None,
) -> Message:
    """
    Record a new state: CAS on the Conversation row plus one appended system Message.

    Args:
        phone: Canonical phone
        text: Display text of the system reply
        metadata: Must contain "state"; draft/listingIds/etc. are carried as given
        expected_version: Version read with get_state (0 when there was no row)
        previous_state: Used only for transition logging/metrics

    Raises:
        StaleStateError: the version moved since it was read
    """
    new_state = metadata["state"]
    now = utcnow()

    if not is_valid_transition(previous_state, new_state):
        logger.warning(f"Off-graph transition for {phone}: {previous_state} -> {new_state}")

    stored_meta = {k: v for k, v in metadata.items() if k != "state"}

    if expected_version == 0 and db.get(Conversation, phone) is None:
        db.add(Conversation(phone=phone, state=new_state, meta=stored_meta, version=1, updated_at=now))
    else:
        result = db.execute(
            update(Conversation)
            .where(Conversation.phone == phone, Conversation.version == expected_version)
            .values(state=new_state, meta=stored_meta, version=expected_version + 1, updated_at=now)
        )
        if result.rowcount != 1:
            db.rollback()
            raise StaleStateError(f"Conversation {phone} changed since version {expected_version}")

    message = Message(
        phone=phone,
        author="system",
        kind="text",
        body_text=text or "",
        meta=dict(metadata),
        created_at=now,
    )
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        # concurrent first write for the same phone
        db.rollback()
        raise StaleStateError(f"Conversation {phone} was created concurrently")

    record_transition(previous_state, new_state)
    logger.info(f"State {phone}: {previous_state} -> {new_state}")
    return message


def state_history(db: Session, phone: str) -> list[str]:
    """Recorded states for a phone, oldest first."""
    rows = (
        db.query(Message)
        .filter(
            Message.phone == phone,
            Message.author == "system",
            Message.meta["state"].as_string().is_not(None),
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )
    return [row.meta["state"] for row in rows]
