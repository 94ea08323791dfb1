"""
Conversation router.

One inbound message in, one recorded state and its replies out. A turn is
planned first (next state, metadata, display text, outbound messages), then
committed with a compare-and-swap on the conversation version, and sent
only after the commit. Listing and payment rows a turn creates are flushed
into the same transaction as the state write, so a turn that loses the race
sends nothing and leaves nothing behind.
"""

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rentbot.config import Settings
from rentbot.flows import search_criteria_from_flow
from rentbot.gateway import WhatsAppGateway
from rentbot.listings import (
    ListingCreationError,
    SHORT_ID_ALPHABET,
    create_listing,
    format_contact,
    format_price,
    get_listing_by_id,
    search_published_listings,
    summarize,
)
from rentbot.metrics import record_best_effort_failure
from rentbot.models import ContactPayment
from rentbot.schemas import Button, ConversationalPayload, SendResult
from rentbot.state_store import (
    AWAITING_LIST_SELECTION,
    AWAITING_MENU_CHOICE,
    CONTACT_PAYMENT_PENDING,
    CONTACT_REVEALED,
    LISTING_CREATED,
    LISTING_STEPS,
    LISTING_WAIT_BEDS,
    LISTING_WAIT_DESC,
    LISTING_WAIT_PRICE,
    LISTING_WAIT_SUBURB,
    LISTING_WAIT_TITLE,
    LISTING_WAIT_TYPE,
    SEARCH_RESULTS,
    SEARCH_WAIT_AREA_BUDGET,
    SHOW_PURCHASES,
    TERMINAL_STATES,
    StaleStateError,
    StateSnapshot,
    get_state,
    set_state,
)
from rentbot.storage import flag_message, utcnow
from rentbot.utils import parse_number

logger = logging.getLogger(__name__)


RESET_WORDS = {"hi", "hello", "hey", "start", "menu", "cancel", "reset"}
SKIP_WORDS = {"skip", "-", "none"}

CONTACT_RE = re.compile(r"^\s*contact\s+([A-Za-z0-9_-]+)\s*$", re.IGNORECASE)
PAID_RE = re.compile(r"^\s*paid\s+([A-Za-z0-9_-]+)\s*$", re.IGNORECASE)

VIEW_PREFIX = "view_"

_AMOUNT = r"((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?)"
_DOLLAR_AMOUNT = re.compile(r"\$\s*" + _AMOUNT)
_BARE_AMOUNT = re.compile(_AMOUNT)
_TOKEN_SPLIT = re.compile(r"[\s,]+")

PAYMENT_ID_LENGTH = 8

MENU_TEXT = "Welcome to RentBot! What would you like to do?"
MENU_BUTTONS = [
    Button(id="menu_list", title="List a property"),
    Button(id="menu_search", title="Search properties"),
    Button(id="menu_purchases", title="View my purchases"),
]
MENU_HINT = "Reply MENU to see options."

SEARCH_PROMPT = "Tell me the area and your maximum monthly budget, e.g. Borrowdale, $500"
NO_RESULTS_TEXT = "No matches found. Try a broader area or higher budget. Reply MENU to start again."
SELECTION_PROMPT = "Reply with a number (e.g. 1) or tap a listing to see its contact details."
INVALID_SELECTION_TEXT = "Invalid selection. Reply with the number of a listing from the results."
LISTING_FAILED_TEXT = "Sorry, creating your listing failed. Please try again later."
DRAFT_EXPIRED_TEXT = "Your unfinished listing expired, so we started over."

# state -> (draft key, question asked on entering the state)
LISTING_QUESTIONS = {
    LISTING_WAIT_TITLE: ("title", "What's the title of your listing? (e.g. 2-bed flat in Avondale)"),
    LISTING_WAIT_SUBURB: ("suburb", "Which suburb is the property in?"),
    LISTING_WAIT_TYPE: ("propertyType", "What type of property is it? (e.g. Apartment, House, Cottage)"),
    LISTING_WAIT_PRICE: ("pricePerMonth", "What is the monthly rent in USD? (e.g. 650)"),
    LISTING_WAIT_BEDS: ("bedrooms", "How many bedrooms?"),
    LISTING_WAIT_DESC: ("description", "Add a short description, or reply 'skip'."),
}


# =============================================================================
# Turn types
# =============================================================================

@dataclass
class Outbound:
    """One message to send once the turn is committed."""
    kind: str  # text | buttons | flow
    body: str = ""
    buttons: list[Button] = field(default_factory=list)
    flow_data: Optional[dict[str, Any]] = None


@dataclass
class TurnPlan:
    state: str
    text: str
    metadata: dict[str, Any]
    outbound: list[Outbound]
    note: str
    # listing or payment rows flushed into the session, committed with the state
    writes: bool = False


@dataclass
class TurnOutcome:
    note: str
    state: Optional[str] = None
    sends: list[SendResult] = field(default_factory=list)


# =============================================================================
# Input parsing
# =============================================================================

def menu_choice(text: str) -> Optional[str]:
    """State a menu reply leads to, or None when it matches no option."""
    t = (text or "").strip().lower()
    if t in ("1", "menu_list") or t.startswith("list"):
        return LISTING_WAIT_TITLE
    if t in ("2", "menu_search") or t.startswith("search"):
        return SEARCH_WAIT_AREA_BUDGET
    if t in ("3", "menu_purchases") or "purchase" in t:
        return SHOW_PURCHASES
    return None


def parse_area_budget(text: str) -> Tuple[Optional[str], Optional[float]]:
    """
    Split "Borrowdale, $200" into ("Borrowdale", 200).

    The area is the first whitespace/comma-delimited token unless that token
    is the amount itself. The budget is the first $-prefixed amount, else the
    first bare number.
    """
    text = (text or "").strip()
    match = _DOLLAR_AMOUNT.search(text) or _BARE_AMOUNT.search(text)
    budget = None
    if match:
        budget = float(match.group(1).replace(",", ""))
        if budget.is_integer():
            budget = int(budget)

    tokens = [t for t in _TOKEN_SPLIT.split(text) if t]
    area = None
    if tokens:
        first = tokens[0].strip(".;:")
        if first and not first.startswith("$") and parse_number(first) is None:
            area = first
    return area, budget


def _selected_index(text: str, count: int) -> Optional[int]:
    t = (text or "").strip().rstrip(").")
    if not t.isdigit():
        return None
    index = int(t)
    return index - 1 if 1 <= index <= count else None


# =============================================================================
# Router
# =============================================================================

class ConversationRouter:
    """Drives one conversational turn against the state store and the gateway."""

    def __init__(self, db: Session, gateway: WhatsAppGateway, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.settings = settings

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def handle(self, message: ConversationalPayload, stored_message=None) -> TurnOutcome:
        phone = message.phone

        if self.window_closed(message.timestamp):
            logger.info(f"Send window closed for {phone}, flagging for follow-up")
            flag_message(self.db, stored_message, needsFollowUp=True)
            return TurnOutcome(note="window-closed")

        snapshot = get_state(self.db, phone)
        if snapshot is not None and snapshot.source == "log":
            logger.info(f"State for {phone} replayed from the message log: {snapshot.state}")
        previous_state = snapshot.state if snapshot else None
        plan = self.plan(message, snapshot)

        try:
            set_state(
                self.db,
                phone,
                plan.text,
                plan.metadata,
                expected_version=snapshot.version if snapshot else 0,
                previous_state=previous_state,
            )
        except StaleStateError as e:
            logger.warning(f"Dropping turn for {phone}: {e}")
            return TurnOutcome(note="state-conflict")
        except SQLAlchemyError:
            self.db.rollback()
            record_best_effort_failure("state_write")
            if plan.writes:
                logger.error(f"Commit failed for {phone}, dropping {plan.note} turn", exc_info=True)
                return TurnOutcome(note="commit-failed")
            logger.warning(f"State write failed for {phone}, replying anyway", exc_info=True)

        sends = [await self._send(phone, outbound) for outbound in plan.outbound]

        flags: dict[str, Any] = {
            "sendResults": [
                s.model_dump(include={"kind", "ok", "error", "fallback_used", "template_required"})
                for s in sends
            ],
        }
        if any(s.template_required for s in sends):
            logger.warning(f"Re-engagement template required for {phone}")
            flags["templateRequired"] = True
        flag_message(self.db, stored_message, **flags)

        return TurnOutcome(note=plan.note, state=plan.state, sends=sends)

    def window_closed(self, timestamp: Optional[datetime]) -> bool:
        """Free-form replies are only allowed within WHATSAPP_FREE_WINDOW_MS of the inbound message."""
        if timestamp is None:
            return False
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        age = datetime.now(timezone.utc) - timestamp
        return age > timedelta(milliseconds=self.settings.WHATSAPP_FREE_WINDOW_MS)

    async def _send(self, phone: str, outbound: Outbound) -> SendResult:
        if outbound.kind == "buttons":
            return await self.gateway.send_interactive_buttons(phone, outbound.body, outbound.buttons)
        if outbound.kind == "flow":
            return await self.gateway.send_flow_start(phone, data=outbound.flow_data)
        return await self.gateway.send_text(phone, outbound.body)

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def plan(self, message: ConversationalPayload, snapshot: Optional[StateSnapshot]) -> TurnPlan:
        """Decide the next state and replies; creates listings/payments the turn needs."""
        text = (message.text or "").strip()
        flow_data = getattr(message, "flow_data", None)

        if flow_data:
            return self._plan_flow_search(flow_data)

        match = CONTACT_RE.match(text)
        if match:
            return self._plan_contact(message.phone, match.group(1), snapshot)

        match = PAID_RE.match(text)
        if match:
            return self._plan_paid(message.phone, match.group(1), snapshot)

        if text.lower() in RESET_WORDS or snapshot is None:
            return self._menu_plan()

        state = snapshot.state

        if state in LISTING_STEPS and self._draft_expired(snapshot):
            logger.info(f"Listing draft for {message.phone} expired in {state}")
            return self._menu_plan(intro=DRAFT_EXPIRED_TEXT, note="draft-expired")

        if state == AWAITING_MENU_CHOICE:
            target = menu_choice(text)
            if target is None:
                return self._menu_plan(note="menu-reprompt")
            return self._menu_target_plan(target, message.phone)

        if state in LISTING_STEPS:
            return self._plan_listing_step(message, snapshot)

        if state == SEARCH_WAIT_AREA_BUDGET:
            return self._plan_search(text)

        if state == AWAITING_LIST_SELECTION or (state == SEARCH_RESULTS and snapshot.metadata.get("listingIds")):
            return self._plan_selection(text, snapshot, message.phone)

        if state in TERMINAL_STATES:
            target = menu_choice(text)
            if target is not None:
                return self._menu_target_plan(target, message.phone)
            return self._menu_plan()

        logger.warning(f"Unknown state {state!r} for {message.phone}, sending menu")
        return self._menu_plan()

    def _draft_expired(self, snapshot: StateSnapshot) -> bool:
        if snapshot.updated_at is None:
            return False
        return utcnow() - snapshot.updated_at > timedelta(minutes=self.settings.DRAFT_TTL_MINUTES)

    def _stay(self, snapshot: Optional[StateSnapshot], reply: str, note: str) -> TurnPlan:
        """Reply without moving; a fresh conversation lands on the menu state instead."""
        if snapshot is None:
            reply = f"{reply}\n{MENU_HINT}"
            return TurnPlan(AWAITING_MENU_CHOICE, reply, {"state": AWAITING_MENU_CHOICE}, [Outbound("text", reply)], note)
        metadata = dict(snapshot.metadata)
        metadata["state"] = snapshot.state
        return TurnPlan(snapshot.state, reply, metadata, [Outbound("text", reply)], note)

    # -- menu -----------------------------------------------------------------

    def _menu_plan(self, intro: str = "", note: str = "menu-sent") -> TurnPlan:
        body = f"{intro}\n\n{MENU_TEXT}" if intro else MENU_TEXT
        return TurnPlan(
            state=AWAITING_MENU_CHOICE,
            text=body,
            metadata={"state": AWAITING_MENU_CHOICE},
            outbound=[Outbound("buttons", body, buttons=list(MENU_BUTTONS))],
            note=note,
        )

    def _menu_target_plan(self, target: str, phone: str) -> TurnPlan:
        if target == LISTING_WAIT_TITLE:
            question = LISTING_QUESTIONS[LISTING_WAIT_TITLE][1]
            return TurnPlan(
                LISTING_WAIT_TITLE, question, {"state": LISTING_WAIT_TITLE, "draft": {}},
                [Outbound("text", question)], "listing-started",
            )
        if target == SEARCH_WAIT_AREA_BUDGET:
            outbound = [Outbound("text", SEARCH_PROMPT)]
            if self.settings.ENABLE_SEARCH_FLOW:
                outbound.append(Outbound("flow"))
            return TurnPlan(
                SEARCH_WAIT_AREA_BUDGET, SEARCH_PROMPT, {"state": SEARCH_WAIT_AREA_BUDGET},
                outbound, "search-prompted",
            )
        return self._plan_purchases(phone)

    # -- listing drafting -------------------------------------------------------

    def _plan_listing_step(self, message: ConversationalPayload, snapshot: StateSnapshot) -> TurnPlan:
        state = snapshot.state
        key, question = LISTING_QUESTIONS[state]
        text = (message.text or "").strip()
        draft = dict(snapshot.metadata.get("draft") or {})

        if not text:
            return TurnPlan(state, question, {"state": state, "draft": draft}, [Outbound("text", question)], "listing-step")

        if state == LISTING_WAIT_PRICE:
            draft[key] = parse_number(text)
        elif state == LISTING_WAIT_BEDS:
            beds = parse_number(text)
            draft[key] = int(beds) if beds is not None else None
        elif state == LISTING_WAIT_DESC:
            draft[key] = "" if text.lower() in SKIP_WORDS else text
        else:
            draft[key] = text

        if state == LISTING_WAIT_DESC:
            return self._plan_create_listing(message, draft)

        next_state = LISTING_STEPS[LISTING_STEPS.index(state) + 1]
        next_question = LISTING_QUESTIONS[next_state][1]
        return TurnPlan(
            next_state, next_question, {"state": next_state, "draft": draft},
            [Outbound("text", next_question)], "listing-step",
        )

    def _plan_create_listing(self, message: ConversationalPayload, draft: dict[str, Any]) -> TurnPlan:
        phone = message.phone
        try:
            listing = create_listing(
                self.db,
                commit=False,
                title=draft.get("title") or "",
                suburb=draft.get("suburb") or "",
                property_type=draft.get("propertyType") or "",
                price_per_month=draft.get("pricePerMonth") or 0,
                bedrooms=draft.get("bedrooms") or 0,
                description=draft.get("description") or "",
                lister_phone_number=phone,
                contact_name=getattr(message, "contact_name", "") or "",
                contact_phone=phone,
                contact_whatsapp=phone,
            )
        except ListingCreationError as e:
            logger.error(f"Listing creation failed for {phone}: {e}")
            return TurnPlan(
                LISTING_WAIT_DESC, LISTING_FAILED_TEXT, {"state": LISTING_WAIT_DESC, "draft": draft},
                [Outbound("text", LISTING_FAILED_TEXT)], "listing-failed",
            )

        reply = (
            f"Your listing has been created! ID: {listing.short_id}\n"
            f"{listing.title} - {listing.suburb or 'N/A'} - {format_price(listing.price_per_month)}/month\n\n"
            f"{MENU_HINT}"
        )
        return TurnPlan(
            LISTING_CREATED, reply,
            {"state": LISTING_CREATED, "listingId": listing.id, "shortId": listing.short_id},
            [Outbound("text", reply)], "listing-created",
            writes=True,
        )

    # -- search -----------------------------------------------------------------

    def _plan_search(self, text: str) -> TurnPlan:
        if not text:
            return TurnPlan(
                SEARCH_WAIT_AREA_BUDGET, SEARCH_PROMPT, {"state": SEARCH_WAIT_AREA_BUDGET},
                [Outbound("text", SEARCH_PROMPT)], "search-reprompt",
            )
        area, budget = parse_area_budget(text)
        logger.info(f"Search area={area!r} budget={budget}")
        listings, total = search_published_listings(
            self.db, area=area, max_price=budget, limit=self.settings.SEARCH_RESULTS_LIMIT
        )
        return self._results_plan(listings, total, {"area": area, "budget": budget}, "search-results")

    def _plan_flow_search(self, flow_data: dict[str, Any]) -> TurnPlan:
        criteria = search_criteria_from_flow(flow_data)
        listings, total = search_published_listings(self.db, limit=self.settings.SEARCH_RESULTS_LIMIT, **criteria)
        return self._results_plan(listings, total, {"area": criteria["area"], "budget": criteria["max_price"]}, "flow-search-results")

    def _results_plan(self, listings: list, total: int, query: dict[str, Any], note: str) -> TurnPlan:
        metadata = {"state": SEARCH_RESULTS, "listingIds": [listing.id for listing in listings], **query}
        if not listings:
            return TurnPlan(SEARCH_RESULTS, NO_RESULTS_TEXT, metadata, [Outbound("text", NO_RESULTS_TEXT)], note)

        lines = [f"Top {len(listings)} of {total} matches:"]
        lines.extend(summarize(listing, i) for i, listing in enumerate(listings, start=1))
        summary = "\n".join(lines)
        buttons = [
            Button(id=f"{VIEW_PREFIX}{listing.id}", title=f"{i}) {listing.title}")
            for i, listing in enumerate(listings, start=1)
        ]
        return TurnPlan(
            SEARCH_RESULTS, summary, metadata,
            [Outbound("text", summary), Outbound("buttons", SELECTION_PROMPT, buttons=buttons)],
            note,
        )

    def _plan_selection(self, text: str, snapshot: StateSnapshot, phone: str) -> TurnPlan:
        listing_ids = list(snapshot.metadata.get("listingIds") or [])
        listing = None

        if text.lower().startswith(VIEW_PREFIX):
            listing = get_listing_by_id(self.db, text[len(VIEW_PREFIX):])
        else:
            index = _selected_index(text, len(listing_ids))
            if index is not None:
                listing = get_listing_by_id(self.db, listing_ids[index])
            elif snapshot.state == SEARCH_RESULTS and not text.isdigit():
                target = menu_choice(text)
                if target is not None:
                    return self._menu_target_plan(target, phone)

        if listing is None:
            metadata = {"state": AWAITING_LIST_SELECTION, "listingIds": listing_ids}
            return TurnPlan(
                AWAITING_LIST_SELECTION, INVALID_SELECTION_TEXT, metadata,
                [Outbound("text", INVALID_SELECTION_TEXT)], "invalid-selection",
            )

        return self._reveal_plan(listing, "contact-revealed")

    def _reveal_plan(self, listing, note: str, extra: Optional[dict[str, Any]] = None) -> TurnPlan:
        reply = format_contact(listing)
        metadata = {"state": CONTACT_REVEALED, "listingId": listing.id, **(extra or {})}
        return TurnPlan(CONTACT_REVEALED, reply, metadata, [Outbound("text", reply)], note)

    # -- payments -----------------------------------------------------------------

    def _new_payment_id(self) -> str:
        return "".join(secrets.choice(SHORT_ID_ALPHABET) for _ in range(PAYMENT_ID_LENGTH))

    def _plan_contact(self, phone: str, listing_ref: str, snapshot: Optional[StateSnapshot]) -> TurnPlan:
        listing = get_listing_by_id(self.db, listing_ref)
        if listing is None:
            return self._stay(snapshot, f"Sorry, listing {listing_ref} was not found.", "listing-not-found")

        payment = ContactPayment(
            id=self._new_payment_id(),
            phone=phone,
            listing_id=listing.id,
            amount=self.settings.CONTACT_FEE,
            status="pending",
            created_at=utcnow(),
        )
        try:
            self.db.add(payment)
            self.db.flush()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Could not create contact payment for {phone}", exc_info=True)
            return self._stay(snapshot, "Sorry, we couldn't start the payment. Please try again later.", "payment-failed")

        logger.info(f"Contact payment {payment.id} pending: phone={phone}, listing={listing.id}")
        reply = (
            f"To unlock contact details for {listing.title} ({listing.short_id}), "
            f"pay {format_price(payment.amount)}.\n"
            f"Payment reference: {payment.id}\n"
            f"Once paid, reply: PAID {payment.id}"
        )
        return TurnPlan(
            CONTACT_PAYMENT_PENDING, reply,
            {"state": CONTACT_PAYMENT_PENDING, "paymentId": payment.id, "listingId": listing.id},
            [Outbound("text", reply)], "payment-pending",
            writes=True,
        )

    def _plan_paid(self, phone: str, payment_ref: str, snapshot: Optional[StateSnapshot]) -> TurnPlan:
        payment = (
            self.db.query(ContactPayment)
            .filter(
                ContactPayment.id == payment_ref.upper(),
                ContactPayment.phone == phone,
                ContactPayment.status == "pending",
            )
            .first()
        )
        if payment is None:
            return self._stay(snapshot, f"No pending payment {payment_ref} found for this number.", "payment-not-found")

        listing = get_listing_by_id(self.db, payment.listing_id)
        if listing is None:
            return self._stay(snapshot, "Sorry, listing not found.", "listing-not-found")

        try:
            payment.status = "paid"
            payment.paid_at = utcnow()
            self.db.flush()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Could not mark payment {payment_ref} paid", exc_info=True)
            return self._stay(snapshot, "Sorry, we couldn't confirm the payment. Please try again later.", "payment-failed")

        logger.info(f"Contact payment {payment.id} paid by {phone}")
        plan = self._reveal_plan(listing, "payment-completed", {"paymentId": payment.id})
        plan.writes = True
        return plan

    def _plan_purchases(self, phone: str) -> TurnPlan:
        payments = (
            self.db.query(ContactPayment)
            .filter(ContactPayment.phone == phone, ContactPayment.status == "paid")
            .order_by(ContactPayment.paid_at.asc())
            .all()
        )
        lines = []
        for i, payment in enumerate(payments, start=1):
            listing = get_listing_by_id(self.db, payment.listing_id)
            if listing is None:
                continue
            contact = listing.contact_phone or listing.lister_phone_number or "N/A"
            lines.append(f"{i}) {listing.title} ({listing.short_id}) - {contact}")

        if lines:
            reply = "Your unlocked contacts:\n" + "\n".join(lines)
        else:
            reply = "You have no purchases yet. Search for a property and reply CONTACT <id> to unlock one."
        reply = f"{reply}\n\n{MENU_HINT}"
        return TurnPlan(SHOW_PURCHASES, reply, {"state": SHOW_PURCHASES}, [Outbound("text", reply)], "purchases-sent")
