"""
Outbound WhatsApp Cloud API gateway.

Sends text, interactive button/list and Flow-start messages. Every method
returns a SendResult instead of raising. Rejected interactive messages are
re-sent as plain text with numbered options.
"""

import logging
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rentbot.config import Settings
from rentbot.listings import flow_screen_options
from rentbot.metrics import record_send
from rentbot.schemas import Button, InteractiveList, SendResult
from rentbot.utils import truncate

logger = logging.getLogger(__name__)

MAX_BUTTONS = 3
BUTTON_TITLE_LIMIT = 20
ROW_TITLE_LIMIT = 24
ROW_DESCRIPTION_LIMIT = 72
TEXT_LIMIT = 4096

# Cloud API: message failed to send because more than 24 hours have passed
REENGAGEMENT_ERROR_CODES = {131047}

FALLBACK_INSTRUCTIONS = "Reply with the number (e.g. 1) or the word (e.g. 'list')."


class WhatsAppGateway:
    """WhatsApp Business Cloud API client for one phone-number-id."""

    def __init__(
        self,
        token: str,
        phone_number_id: str,
        base_url: str = "https://graph.facebook.com",
        api_version: str = "v24.0",
        timeout: float = 10.0,
        retry_attempts: int = 3,
        default_flow_id: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.default_flow_id = default_flow_id
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "WhatsAppGateway":
        return cls(
            token=settings.WHATSAPP_API_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            base_url=settings.WHATSAPP_API_BASE_URL,
            api_version=settings.WHATSAPP_API_VERSION,
            timeout=settings.OUTBOUND_TIMEOUT_SECONDS,
            retry_attempts=settings.OUTBOUND_RETRY_ATTEMPTS,
            default_flow_id=settings.WHATSAPP_FLOW_ID,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.token and self.phone_number_id)

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _post(self, payload: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.2, max=2),
            reraise=True,
        ):
            with attempt:
                async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                    response = await client.post(self.messages_url, json=payload, headers=headers)

        try:
            body = response.json()
        except ValueError:
            body = {"error": "invalid-json"}
        if not isinstance(body, dict):
            body = {"data": body}
        return response.status_code, body

    async def _deliver(self, kind: str, payload: dict[str, Any]) -> SendResult:
        if not self.configured:
            logger.warning(f"WhatsApp credentials missing, {kind} message not sent")
            record_send(kind, "missing-credentials")
            return SendResult(ok=False, kind=kind, error="missing-credentials")

        try:
            status_code, body = await self._post(payload)
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp {kind} send failed: {e}", extra={"to": payload.get("to")})
            record_send(kind, "error")
            return SendResult(ok=False, kind=kind, error="transport-error")

        error = body.get("error")
        if status_code >= 400 and not error:
            error = f"http-{status_code}"

        template_required = False
        error_text = None
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            template_required = code in REENGAGEMENT_ERROR_CODES
            error_text = str(code if code is not None else error)
            logger.warning(
                f"WhatsApp API rejected {kind} message: {error}",
                extra={"to": payload.get("to"), "status_code": status_code},
            )

        ok = error is None
        record_send(kind, "ok" if ok else "error")
        return SendResult(
            ok=ok,
            kind=kind,
            status_code=status_code,
            response=body,
            error=error_text,
            template_required=template_required,
        )

    async def _fallback(self, failed: SendResult, phone: str, body: str, options: list[str]) -> SendResult:
        """Plain-text rendering of a rejected interactive message."""
        if failed.ok or failed.error == "missing-credentials":
            return failed
        lines = [body, ""]
        lines.extend(f"{i}) {title}" for i, title in enumerate(options, start=1))
        lines.extend(["", FALLBACK_INSTRUCTIONS])
        fallback = await self.send_text(phone, "\n".join(lines))
        record_send(failed.kind, "fallback")
        return fallback.model_copy(update={
            "kind": failed.kind,
            "fallback_used": True,
            "template_required": failed.template_required or fallback.template_required,
        })

    # -------------------------------------------------------------------------
    # Message types
    # -------------------------------------------------------------------------

    async def send_text(self, phone: str, body: str) -> SendResult:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "text",
            "text": {"body": truncate(body, TEXT_LIMIT), "preview_url": False},
        }
        return await self._deliver("text", payload)

    async def send_interactive_buttons(self, phone: str, body: str, buttons: list[Button]) -> SendResult:
        buttons = buttons[:MAX_BUTTONS]
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": truncate(body, 1024)},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": b.id, "title": truncate(b.title, BUTTON_TITLE_LIMIT)}}
                        for b in buttons
                    ],
                },
            },
        }
        result = await self._deliver("buttons", payload)
        return await self._fallback(result, phone, body, [b.title for b in buttons])

    async def send_interactive_list(self, phone: str, menu: InteractiveList) -> SendResult:
        interactive: dict[str, Any] = {
            "type": "list",
            "body": {"text": truncate(menu.body, 1024)},
            "action": {
                "button": truncate(menu.button_label, BUTTON_TITLE_LIMIT),
                "sections": [
                    {
                        "title": truncate(section.title, ROW_TITLE_LIMIT),
                        "rows": [
                            {
                                "id": row.id,
                                "title": truncate(row.title, ROW_TITLE_LIMIT),
                                "description": truncate(row.description, ROW_DESCRIPTION_LIMIT),
                            }
                            for row in section.rows
                        ],
                    }
                    for section in menu.sections
                ],
            },
        }
        if menu.header:
            interactive["header"] = {"type": "text", "text": truncate(menu.header, 60)}
        if menu.footer:
            interactive["footer"] = {"text": truncate(menu.footer, 60)}

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "interactive",
            "interactive": interactive,
        }
        result = await self._deliver("list", payload)
        options = [row.title for section in menu.sections for row in section.rows]
        return await self._fallback(result, phone, menu.body, options)

    async def send_flow_start(
        self,
        phone: str,
        flow_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        screen: str = "SEARCH",
        header: str = "Find rentals - filters",
        body: str = "Please press continue to SEARCH.",
        footer: str = "Search",
        cta: str = "Search",
    ) -> SendResult:
        """Open a Flow on `screen`; flow_token carries the phone so exchanges map back to it."""
        flow_id = flow_id or self.default_flow_id
        if not flow_id:
            logger.warning("No Flow id configured, flow start not sent")
            record_send("flow", "error")
            return SendResult(ok=False, kind="flow", error="missing-flow-id")

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "interactive",
            "interactive": {
                "type": "flow",
                "header": {"type": "text", "text": header},
                "body": {"text": body},
                "footer": {"text": footer},
                "action": {
                    "name": "flow",
                    "parameters": {
                        "flow_message_version": "3",
                        "flow_id": str(flow_id),
                        "flow_token": phone,
                        "flow_cta": cta,
                        "flow_action": "navigate",
                        "flow_action_payload": {
                            "screen": screen,
                            "data": flow_screen_options(data),
                        },
                    },
                },
            },
        }
        return await self._deliver("flow", payload)
