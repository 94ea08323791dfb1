"""
Listings store interface consumed by the conversation core.

Only the narrow paths the chatbot needs live here: lookup by id,
published search by area and price, and chatbot-originated creation.
"""

import logging
import secrets
import string
import uuid
from typing import Any, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rentbot.models import Listing
from rentbot.storage import utcnow

logger = logging.getLogger(__name__)

SHORT_ID_ALPHABET = string.ascii_uppercase + string.digits
SHORT_ID_ATTEMPTS = 10

# Initial data for the SEARCH screen of the search Flow
DEFAULT_FLOW_OPTIONS = {
    "cities": [
        {"id": "harare", "title": "Harare"},
        {"id": "bulawayo", "title": "Bulawayo"},
        {"id": "mutare", "title": "Mutare"},
    ],
    "suburbs": [
        {"id": "any", "title": "Any"},
        {"id": "borrowdale", "title": "Borrowdale"},
        {"id": "mount_pleasant", "title": "Mount Pleasant"},
        {"id": "avondale", "title": "Avondale"},
    ],
    "propertyCategories": [
        {"id": "residential", "title": "Residential"},
        {"id": "commercial", "title": "Commercial"},
    ],
    "propertyTypes": [
        {"id": "house", "title": "House"},
        {"id": "flat", "title": "Flat"},
        {"id": "studio", "title": "Studio"},
    ],
    "bedrooms": [
        {"id": "any", "title": "Any"},
        {"id": "1", "title": "1"},
        {"id": "2", "title": "2"},
        {"id": "3", "title": "3"},
    ],
}


class ListingCreationError(Exception):
    """Listing could not be validated or inserted."""
    pass


def flow_screen_options(overrides: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Default SEARCH screen options merged with caller-supplied overrides."""
    data = {key: list(value) for key, value in DEFAULT_FLOW_OPTIONS.items()}
    data.update(overrides or {})
    return data


def _generate_short_id() -> str:
    return "".join(secrets.choice(SHORT_ID_ALPHABET) for _ in range(4))


def _unused_short_id(db: Session) -> str:
    for _ in range(SHORT_ID_ATTEMPTS):
        candidate = _generate_short_id()
        if not db.query(Listing.id).filter(Listing.short_id == candidate).first():
            return candidate
    raise ListingCreationError("Could not allocate a short id")


def create_listing(db: Session, commit: bool = True, **fields) -> Listing:
    """
    Insert a listing in a single commit.

    With commit=False the row is only flushed and becomes durable with the
    caller's next commit (the conversation state write), or disappears with
    its rollback.

    Raises:
        ListingCreationError: missing title/lister phone, negative numbers or a database failure
    """
    title = (fields.get("title") or "").strip()
    lister = (fields.get("lister_phone_number") or "").strip()
    if not title:
        raise ListingCreationError("title is required")
    if not lister:
        raise ListingCreationError("lister_phone_number is required")
    for numeric in ("price_per_month", "bedrooms", "deposit"):
        value = fields.get(numeric)
        if value is not None and value < 0:
            raise ListingCreationError(f"{numeric} must not be negative")

    try:
        now = utcnow()
        listing = Listing(
            id=uuid.uuid4().hex,
            short_id=_unused_short_id(db),
            title=title,
            lister_phone_number=lister,
            suburb=(fields.get("suburb") or "").strip(),
            property_category=fields.get("property_category") or "residential",
            property_type=(fields.get("property_type") or "").strip(),
            price_per_month=fields.get("price_per_month") or 0,
            deposit=fields.get("deposit"),
            bedrooms=int(fields.get("bedrooms") or 0),
            description=(fields.get("description") or "").strip(),
            features=list(fields.get("features") or []),
            images=list(fields.get("images") or []),
            contact_name=fields.get("contact_name") or "",
            contact_phone=fields.get("contact_phone") or "",
            contact_whatsapp=fields.get("contact_whatsapp") or "",
            contact_email=fields.get("contact_email") or "",
            status=fields.get("status") or "published",
            created_at=now,
            updated_at=now,
        )
        db.add(listing)
        if commit:
            db.commit()
        else:
            db.flush()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Listing insert failed for {lister}: {e}")
        raise ListingCreationError("database error") from e

    logger.info(f"Listing created: id={listing.id}, short_id={listing.short_id}, lister={lister}")
    return listing


def get_listing_by_id(db: Session, listing_id: Optional[str]) -> Optional[Listing]:
    """Look a listing up by primary key or (case-insensitive) short id."""
    listing_id = (listing_id or "").strip()
    if not listing_id:
        return None
    listing = db.get(Listing, listing_id)
    if listing is None and len(listing_id) == 4:
        listing = db.query(Listing).filter(Listing.short_id == listing_id.upper()).first()
    return listing


def search_published_listings(
    db: Session,
    area: Optional[str] = None,
    q: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    limit: int = 6,
) -> Tuple[list, int]:
    """
    Search published listings, newest first.

    Args:
        area: Case-insensitive substring of the suburb
        q: Case-insensitive substring of title, suburb or description
        min_price / max_price: Inclusive monthly price bounds
        limit: Page size

    Returns:
        Tuple of (listings, total matching count)
    """
    query = db.query(Listing).filter(Listing.status == "published")

    if area:
        query = query.filter(func.lower(Listing.suburb).contains(area.strip().lower(), autoescape=True))
    if q:
        needle = q.strip().lower()
        query = query.filter(or_(
            func.lower(Listing.title).contains(needle, autoescape=True),
            func.lower(Listing.suburb).contains(needle, autoescape=True),
            func.lower(Listing.description).contains(needle, autoescape=True),
        ))
    if min_price is not None:
        query = query.filter(Listing.price_per_month >= min_price)
    if max_price is not None:
        query = query.filter(Listing.price_per_month <= max_price)

    total = query.count()
    listings = query.order_by(Listing.created_at.desc(), Listing.id.asc()).limit(max(1, limit)).all()
    logger.debug(f"Listing search area={area!r} q={q!r} max={max_price}: {len(listings)} of {total}")
    return listings, total


def format_price(value) -> str:
    if value is None:
        return "N/A"
    return f"${value:,.0f}" if float(value).is_integer() else f"${value:,.2f}"


def format_contact(listing: Listing) -> str:
    """Contact-detail reveal text."""
    lines = [
        f"Contact for {listing.title} ({listing.short_id}):",
        f"Name: {listing.contact_name or 'Owner'}",
        f"Phone: {listing.contact_phone or listing.lister_phone_number or 'N/A'}",
    ]
    if listing.contact_whatsapp:
        lines.append(f"WhatsApp: {listing.contact_whatsapp}")
    if listing.contact_email:
        lines.append(f"Email: {listing.contact_email}")
    return "\n".join(lines)


def summarize(listing: Listing, index: int) -> str:
    """One numbered line of a search-result summary."""
    return (
        f"{index}) {listing.title} - {listing.suburb or 'N/A'} - "
        f"{format_price(listing.price_per_month)}/month - {listing.bedrooms} bed - ID:{listing.short_id}"
    )
