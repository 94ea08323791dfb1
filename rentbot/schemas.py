"""
Pydantic schemas for inbound payloads, gateway results and HTTP responses.

This module contains:
- Tagged variants produced by the payload normalizer
- Outbound message building blocks and the gateway SendResult
- Response models for the HTTP endpoints
"""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# =============================================================================
# Inbound payload variants
# =============================================================================

class InboundMessage(BaseModel):
    """Canonical {id, from, text} triple shared by every conversational variant."""
    id: str = Field("", description="Provider message id, empty when absent")
    phone: str = Field("", description="Canonical sender phone, digits only")
    text: str = Field("", description="Text body or interactive reply id")
    timestamp: Optional[datetime] = Field(None, description="Provider send time (UTC)")
    kind: Literal["text", "interactive", "unknown"] = "unknown"
    conversation_id: Optional[str] = None


class LegacyMessage(InboundMessage):
    """Simplified shapes: top-level user_message, message wrapper or messages[]."""
    variant: Literal["legacy"] = "legacy"


class CloudApiMessage(InboundMessage):
    """entry[0].changes[0].value.messages[0] of the WhatsApp Cloud API."""
    variant: Literal["cloud_api"] = "cloud_api"
    message_type: str = ""
    contact_name: str = ""


class InteractiveReply(CloudApiMessage):
    """Cloud API interactive message: button/list reply or completed Flow (nfm_reply)."""
    variant: Literal["interactive_reply"] = "interactive_reply"
    reply_id: str = ""
    reply_title: str = ""
    flow_data: Optional[dict[str, Any]] = None


class FlowExchange(BaseModel):
    """Encrypted WhatsApp Flow data-exchange request."""
    variant: Literal["flow_exchange"] = "flow_exchange"
    encrypted_flow_data: str
    encrypted_aes_key: str
    initial_vector: str


class IgnoredPayload(BaseModel):
    """Payload with nothing to process (status callbacks, unknown shapes)."""
    variant: Literal["ignored"] = "ignored"
    reason: str


ConversationalPayload = Union[LegacyMessage, CloudApiMessage, InteractiveReply]
NormalizedPayload = Union[LegacyMessage, CloudApiMessage, InteractiveReply, FlowExchange, IgnoredPayload]


# =============================================================================
# Outbound messages
# =============================================================================

class Button(BaseModel):
    id: str
    title: str


class ListRow(BaseModel):
    id: str
    title: str
    description: str = ""


class ListSection(BaseModel):
    title: str = ""
    rows: list[ListRow] = Field(default_factory=list)


class InteractiveList(BaseModel):
    header: str = ""
    body: str
    footer: str = ""
    button_label: str = "Options"
    sections: list[ListSection] = Field(default_factory=list)


class SendResult(BaseModel):
    """Outcome of one gateway call; never raised, always returned."""
    ok: bool
    kind: str
    status_code: Optional[int] = None
    response: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    fallback_used: bool = False
    template_required: bool = False


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response for conversational webhook deliveries (always HTTP 200)."""
    ok: bool = True
    note: str = Field(..., description="What happened to the delivery")
    state: Optional[str] = Field(None, description="Conversation state after the turn")


class ErrorResponse(BaseModel):
    ok: bool = False
    note: str


class MessageResponse(BaseModel):
    """One entry of the conversation log."""
    id: int
    phone: str
    author: str
    external_id: Optional[str] = None
    kind: str
    body_text: str
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason when not ready")
