"""
WhatsApp Input Normalization

Turns any inbound webhook JSON into one tagged variant:
LegacyMessage, CloudApiMessage, InteractiveReply, FlowExchange or IgnoredPayload.

Parsers run in a fixed order; the first one that recognises the payload wins.
Missing fields never raise.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from rentbot.schemas import (
    CloudApiMessage,
    FlowExchange,
    IgnoredPayload,
    InteractiveReply,
    LegacyMessage,
    NormalizedPayload,
)
from rentbot.utils import canonical_phone

logger = logging.getLogger(__name__)


def _get(obj: Any, *path) -> Any:
    """Walk dict keys / list indexes, returning None on the first miss."""
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        else:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
        if obj is None:
            return None
    return obj


def _first(*values) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _optional_str(value) -> Optional[str]:
    if value in (None, "") or isinstance(value, (dict, list)):
        return None
    return str(value)


def _parse_timestamp(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)) or str(value).isdigit():
            seconds = float(value)
            # some legacy senders use milliseconds
            if seconds > 1e11:
                seconds /= 1000
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logger.debug(f"Unparseable message timestamp: {value!r}")
        return None


def extract_text(msg: Any) -> str:
    """
    Text of a message object.

    Interactive replies yield the reply id (preferred) or its title.
    """
    if isinstance(msg, str):
        return msg
    if not isinstance(msg, dict):
        return ""
    interactive = msg.get("interactive")
    if isinstance(interactive, dict):
        for reply_key in ("button_reply", "list_reply"):
            reply = interactive.get(reply_key)
            if isinstance(reply, dict):
                return str(_first(reply.get("id"), reply.get("title")) or "")
    button = msg.get("button")
    if isinstance(button, dict):
        return str(_first(button.get("payload"), button.get("text")) or "")
    text = msg.get("text")
    if isinstance(text, dict):
        return str(text.get("body") or "")
    if isinstance(text, str):
        return text
    body = msg.get("body")
    if isinstance(body, dict):
        return str(body.get("text") or "")
    if isinstance(body, str):
        return body
    return ""


def _kind(msg: Any, text: str) -> str:
    if isinstance(msg, dict) and (msg.get("interactive") or msg.get("button")):
        return "interactive"
    return "text" if text else "unknown"


# =============================================================================
# Shape parsers
# =============================================================================

def _parse_flow_exchange(payload: dict, cc: str) -> Optional[NormalizedPayload]:
    data = payload.get("encrypted_flow_data")
    key = payload.get("encrypted_aes_key")
    iv = _first(payload.get("initial_vector"), payload.get("initialization_vector"))
    if not (data and key and iv):
        return None
    return FlowExchange(encrypted_flow_data=str(data), encrypted_aes_key=str(key), initial_vector=str(iv))


def _parse_user_message(payload: dict, cc: str) -> Optional[NormalizedPayload]:
    if not isinstance(payload.get("user_message"), str):
        return None
    text = payload["user_message"]
    return LegacyMessage(
        id=str(_first(payload.get("message_id"), payload.get("wa_message_id")) or ""),
        phone=canonical_phone(_first(payload.get("from"), payload.get("phone_number"), payload.get("chat_id")), cc),
        text=text,
        timestamp=_parse_timestamp(_first(payload.get("timestamp"), payload.get("ts"))),
        kind="text" if text else "unknown",
        conversation_id=_optional_str(payload.get("conversation_id")),
    )


def _parse_message_wrapper(payload: dict, cc: str) -> Optional[NormalizedPayload]:
    msg = _first(payload.get("message"), payload.get("message_content"), _get(payload, "messages", 0))
    if msg is None:
        return None
    msg_dict = msg if isinstance(msg, dict) else {}
    text = extract_text(msg)
    return LegacyMessage(
        id=str(_first(
            msg_dict.get("id"), msg_dict.get("_id"), msg_dict.get("message_id"),
            payload.get("message_id"), payload.get("wa_message_id"),
        ) or ""),
        phone=canonical_phone(_first(
            msg_dict.get("from"), msg_dict.get("sender"), msg_dict.get("from_phone"),
            payload.get("from"), payload.get("chat_id"), payload.get("phone_number"),
        ), cc),
        text=text,
        timestamp=_parse_timestamp(_first(msg_dict.get("timestamp"), payload.get("timestamp"), payload.get("ts"))),
        kind=_kind(msg, text),
        conversation_id=_optional_str(payload.get("conversation_id")),
    )


def _parse_cloud_api(payload: dict, cc: str) -> Optional[NormalizedPayload]:
    value = _get(payload, "entry", 0, "changes", 0, "value")
    if not isinstance(value, dict):
        return None
    msg = _get(value, "messages", 0)
    if not isinstance(msg, dict):
        if value.get("statuses"):
            return IgnoredPayload(reason="status-update")
        return IgnoredPayload(reason="no-messages")

    common = dict(
        id=str(_first(msg.get("id"), _get(payload, "entry", 0, "id")) or ""),
        phone=canonical_phone(_first(msg.get("from"), _get(value, "contacts", 0, "wa_id")), cc),
        timestamp=_parse_timestamp(msg.get("timestamp")),
        message_type=str(msg.get("type") or ""),
        contact_name=str(_get(value, "contacts", 0, "profile", "name") or ""),
        conversation_id=_optional_str(payload.get("conversation_id")),
    )
    text = extract_text(msg)

    interactive = msg.get("interactive")
    if isinstance(interactive, dict):
        reply = next(
            (r for r in (interactive.get("button_reply"), interactive.get("list_reply")) if isinstance(r, dict)),
            {},
        )
        flow_data = None
        nfm = interactive.get("nfm_reply")
        if isinstance(nfm, dict):
            flow_data = _parse_response_json(nfm.get("response_json"))
        return InteractiveReply(
            **common,
            text=text,
            kind="interactive",
            reply_id=str(reply.get("id") or ""),
            reply_title=str(reply.get("title") or ""),
            flow_data=flow_data,
        )

    return CloudApiMessage(**common, text=text, kind=_kind(msg, text))


def _parse_response_json(raw) -> Optional[dict]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Flow completion carried invalid response_json")
        return None
    return parsed if isinstance(parsed, dict) else None


PARSERS: list[Callable[[dict, str], Optional[NormalizedPayload]]] = [
    _parse_flow_exchange,
    _parse_user_message,
    _parse_message_wrapper,
    _parse_cloud_api,
]


def normalize_payload(payload: Any, default_country_code: str = "263") -> NormalizedPayload:
    """
    Classify an inbound webhook payload.

    Args:
        payload: Parsed JSON body (anything; non-objects are ignored)
        default_country_code: Used to canonicalise local phone formats

    Returns:
        The first variant recognised by PARSERS, or IgnoredPayload
    """
    if not isinstance(payload, dict) or not payload:
        return IgnoredPayload(reason="empty-payload")

    for parser in PARSERS:
        result = parser(payload, default_country_code)
        if result is None:
            continue
        if isinstance(result, (FlowExchange, IgnoredPayload)):
            return result
        if not result.id and not result.phone:
            return IgnoredPayload(reason="no-id-or-phone")
        if not result.phone:
            return IgnoredPayload(reason="no-phone")
        return result

    return IgnoredPayload(reason="no-id-or-phone")
