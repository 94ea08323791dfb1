"""
WhatsApp Flow handling for the rental search form.

Covers the encrypted data-exchange endpoint (ping, error notifications,
INIT/BACK and SEARCH -> RESULTS) and the search criteria shared with
completed Flow replies handled by the conversation router.
"""

import logging
import re
from typing import Any, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rentbot.config import Settings
from rentbot.flow_crypto import FlowCryptoError, decrypt_request, encrypt_flow_response, load_private_key
from rentbot.listings import flow_screen_options, format_price, search_published_listings
from rentbot.schemas import FlowExchange
from rentbot.state_store import SEARCH_RESULTS, StaleStateError, get_state, set_state
from rentbot.storage import best_effort
from rentbot.utils import canonical_phone

logger = logging.getLogger(__name__)

SEARCH_SCREEN = "SEARCH"
RESULTS_SCREEN = "RESULTS"
RESULTS_PAGE_SIZE = 6
RESULT_TEXT_SLOTS = 3

PING_RESPONSE = {"data": {"status": "active"}}
ERROR_ACK_RESPONSE = {"data": {"acknowledged": True}}

_NON_PRICE = re.compile(r"[^\d.]")


def is_ping(payload: Any) -> bool:
    """Flow health check: {"action": "ping"}, any case."""
    return isinstance(payload, dict) and str(payload.get("action") or "").strip().lower() == "ping"


def _field(data: dict, *names) -> str:
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return str(value).strip()
    return ""


def _price(value: str) -> Optional[float]:
    cleaned = _NON_PRICE.sub("", value or "")
    if not cleaned:
        return None
    try:
        price = float(cleaned)
    except ValueError:
        return None
    return price if price > 0 else None


def search_criteria_from_flow(data: Optional[dict]) -> dict[str, Any]:
    """
    Map SEARCH form fields onto search_published_listings keyword arguments.

    Suburb ids such as "mount_pleasant" become "mount pleasant"; "any" means no area filter.
    """
    data = data or {}
    suburb = _field(data, "suburb", "selected_suburb").replace("_", " ")
    if suburb.lower() == "any":
        suburb = ""
    return {
        "area": suburb or None,
        "q": _field(data, "q", "keyword", "query") or None,
        "min_price": _price(_field(data, "min_price", "minPrice", "min")),
        "max_price": _price(_field(data, "max_price", "maxPrice", "max")),
    }


def results_screen_data(listings: list, total: int, form: Optional[dict] = None) -> dict[str, Any]:
    """Data for the RESULTS screen: listing cards, three text slots and the echoed filters."""
    form = form or {}
    cards = [
        {
            "id": listing.id,
            "title": listing.title,
            "suburb": listing.suburb,
            "pricePerMonth": listing.price_per_month,
            "bedrooms": listing.bedrooms,
        }
        for listing in listings
    ]
    texts = [
        f"{i}) {listing.title} - {listing.suburb or 'N/A'} - {format_price(listing.price_per_month)} - ID:{listing.short_id}"
        for i, listing in enumerate(listings[:RESULT_TEXT_SLOTS], start=1)
    ]
    data: dict[str, Any] = {
        "resultsCount": total,
        "listings": cards,
        "querySummary": f"Top {len(cards)} results",
        "city": _field(form, "city", "selected_city"),
        "suburb": _field(form, "suburb", "selected_suburb"),
        "property_category": _field(form, "property_category", "selected_category"),
        "property_type": _field(form, "property_type", "selected_type"),
        "bedrooms": _field(form, "bedrooms", "selected_bedrooms"),
    }
    for slot in range(RESULT_TEXT_SLOTS):
        text = texts[slot] if slot < len(texts) else ""
        data[f"listingText{slot}"] = text
        data[f"hasResult{slot}"] = bool(text)
    return data


def _phone_from_token(flow_token: Any, default_country_code: str) -> Optional[str]:
    token = str(flow_token or "").strip().lstrip("+").replace(" ", "")
    if not token.isdigit():
        return None
    phone = canonical_phone(token, default_country_code)
    return phone if len(phone) >= 9 else None


def _record_results_state(db: Session, phone: str, listings: list) -> None:
    """Let a numeric reply after the Flow pick from the listings it showed."""
    summary = f"Flow search returned {len(listings)} listing(s)"
    with best_effort(db, "flow_state"):
        snapshot = get_state(db, phone)
        try:
            set_state(
                db,
                phone,
                summary,
                {"state": SEARCH_RESULTS, "listingIds": [listing.id for listing in listings]},
                expected_version=snapshot.version if snapshot else 0,
                previous_state=snapshot.state if snapshot else None,
            )
        except StaleStateError:
            logger.warning(f"Flow results state for {phone} lost a concurrent write")


def build_flow_response(db: Session, payload: dict[str, Any], settings: Settings) -> dict[str, Any]:
    """Plaintext response for a decrypted data-exchange request."""
    action = str(payload.get("action") or "").strip().lower()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

    if action == "ping":
        return PING_RESPONSE

    if data.get("error"):
        logger.warning(f"Flow client reported an error: {data.get('error')} {data.get('error_message', '')}")
        return ERROR_ACK_RESPONSE

    if action in ("init", "back"):
        return {"screen": SEARCH_SCREEN, "data": flow_screen_options()}

    screen = str(payload.get("screen") or SEARCH_SCREEN).upper()
    if action == "data_exchange" and screen == SEARCH_SCREEN:
        criteria = search_criteria_from_flow(data)
        try:
            listings, total = search_published_listings(db, limit=RESULTS_PAGE_SIZE, **criteria)
        except SQLAlchemyError:
            db.rollback()
            logger.warning("Flow listing search failed", exc_info=True)
            listings, total = [], 0

        phone = _phone_from_token(payload.get("flow_token"), settings.DEFAULT_COUNTRY_CODE)
        if phone:
            _record_results_state(db, phone, listings[: settings.SEARCH_RESULTS_LIMIT])

        return {"screen": RESULTS_SCREEN, "data": results_screen_data(listings, total, data)}

    logger.info(f"Unhandled flow action={action!r} screen={screen!r}")
    return {
        "screen": SEARCH_SCREEN,
        "data": {**flow_screen_options(), "error_message": "Something went wrong. Please try again."},
    }


def handle_flow_exchange(db: Session, exchange: FlowExchange, settings: Settings) -> Tuple[int, Any, str]:
    """
    Decrypt, handle and re-encrypt one Flow data-exchange request.

    Returns:
        Tuple of (HTTP status, body, media type). Success bodies are the
        base64 response as text/plain; failures are JSON {ok, note}.
    """
    if not settings.WHATSAPP_FLOW_PRIVATE_KEY:
        logger.error("Flow request received but WHATSAPP_FLOW_PRIVATE_KEY is not set")
        return 500, {"ok": False, "note": "missing-private-key"}, "application/json"

    try:
        private_key = load_private_key(
            settings.WHATSAPP_FLOW_PRIVATE_KEY,
            settings.WHATSAPP_FLOW_PRIVATE_KEY_PASSPHRASE or None,
        )
    except FlowCryptoError as e:
        logger.error(f"Flow private key unusable: {e}")
        return 500, {"ok": False, "note": "invalid-private-key"}, "application/json"

    try:
        payload, aes_key, request_iv = decrypt_request(exchange, private_key)
    except FlowCryptoError as e:
        logger.warning(f"Flow request decrypt failed: {e}")
        return 421, {"ok": False, "note": "decrypt-failed"}, "application/json"

    response = build_flow_response(db, payload, settings)

    try:
        body = encrypt_flow_response(response, aes_key, request_iv, settings.FLOW_RESPONSE_IV_MODE)
    except FlowCryptoError as e:
        logger.error(f"Flow response encrypt failed: {e}")
        return 500, {"ok": False, "note": "encrypt-failed"}, "application/json"

    return 200, body, "text/plain"
