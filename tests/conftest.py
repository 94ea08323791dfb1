"""
Pytest configuration and shared fixtures.

The test environment is set here, before anything imports rentbot, so the
cached settings and the engine pick it up.
"""

import hashlib
import hmac
import json
import os
import time
from typing import Optional

os.environ["DATABASE_URL"] = "sqlite:///./test_rentbot.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["WHATSAPP_API_TOKEN"] = "test-token"
os.environ["WHATSAPP_PHONE_NUMBER_ID"] = "1234567890"
os.environ["WHATSAPP_VERIFY_TOKEN"] = "verify-me"
os.environ["WHATSAPP_APP_SECRET"] = "app-secret"
os.environ["WHATSAPP_FLOW_ID"] = "flow-123"

import httpx
import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from rentbot.config import get_settings
get_settings.cache_clear()

from rentbot.gateway import WhatsAppGateway
from rentbot.listings import create_listing
from rentbot.main import app, dedup_guard, get_gateway
from rentbot.storage import Base, SessionLocal, engine


TEST_APP_SECRET = os.environ["WHATSAPP_APP_SECRET"]
TEST_PHONE = "263771234567"


class RecordingGateway(WhatsAppGateway):
    """Real gateway over an httpx.MockTransport that records every Cloud API request."""

    def __init__(self, fail_interactive: bool = False, error_code: Optional[int] = None):
        self.requests: list[dict] = []
        self.fail_interactive = fail_interactive
        self.error_code = error_code
        super().__init__(
            token="test-token",
            phone_number_id="1234567890",
            retry_attempts=1,
            default_flow_id="flow-123",
            transport=httpx.MockTransport(self._handle),
        )

    def _handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.error_code is not None:
            return httpx.Response(400, json={"error": {"code": self.error_code, "message": "rejected"}})
        if self.fail_interactive and payload.get("type") == "interactive":
            return httpx.Response(400, json={"error": {"code": 131009, "message": "Parameter value is not valid"}})
        return httpx.Response(200, json={"messages": [{"id": f"wamid.out.{len(self.requests)}"}]})

    @property
    def texts(self) -> list[str]:
        return [r["text"]["body"] for r in self.requests if r.get("type") == "text"]

    @property
    def interactive(self) -> list[dict]:
        return [r["interactive"] for r in self.requests if r.get("type") == "interactive"]

    def reset(self) -> None:
        self.requests.clear()


def compute_signature(body: str, secret: str = TEST_APP_SECRET) -> str:
    """X-Hub-Signature-256 header value for a request body."""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def cloud_text_payload(text: str, message_id: Optional[str], phone: str = TEST_PHONE,
                       timestamp: Optional[int] = None) -> dict:
    """Cloud API entry[].changes[].value.messages[] delivery with one text message."""
    message = {
        "from": phone,
        "timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "type": "text",
        "text": {"body": text},
    }
    if message_id:
        message["id"] = message_id
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA_ID",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"phone_number_id": "1234567890"},
                    "contacts": [{"profile": {"name": "Tariro"}, "wa_id": phone}],
                    "messages": [message],
                },
            }],
        }],
    }


def cloud_button_payload(reply_id: str, title: str, message_id: str, phone: str = TEST_PHONE) -> dict:
    payload = cloud_text_payload("", message_id, phone)
    message = payload["entry"][0]["changes"][0]["value"]["messages"][0]
    message.pop("text")
    message["type"] = "interactive"
    message["interactive"] = {"type": "button_reply", "button_reply": {"id": reply_id, "title": title}}
    return payload


def post_webhook(client: TestClient, payload: dict, signed: bool = True) -> httpx.Response:
    body = json.dumps(payload)
    headers = {"Content-Type": "application/json"}
    if signed:
        headers["X-Hub-Signature-256"] = compute_signature(body)
    return client.post("/webhooks/whatsapp", content=body, headers=headers)


class Conversation:
    """Drives one phone's turns through the webhook with unique message ids."""

    def __init__(self, client: TestClient, phone: str = TEST_PHONE):
        self.client = client
        self.phone = phone
        self.counter = 0

    def say(self, text: str) -> dict:
        self.counter += 1
        response = post_webhook(self.client, cloud_text_payload(text, f"wamid.{self.phone}.{self.counter}", self.phone))
        assert response.status_code == 200
        return response.json()

    def tap(self, reply_id: str, title: str = "") -> dict:
        self.counter += 1
        payload = cloud_button_payload(reply_id, title or reply_id, f"wamid.{self.phone}.{self.counter}", self.phone)
        response = post_webhook(self.client, payload)
        assert response.status_code == 200
        return response.json()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture(scope="function")
def client(gateway):
    """Create test client with fresh database and a recording gateway for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_gateway] = lambda: gateway
    dedup_guard.clear()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    dedup_guard.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """Session on the same fresh schema the client uses."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def chat(client):
    return Conversation(client)


@pytest.fixture
def make_listing(db):
    def _make(**overrides):
        fields = {
            "title": "Garden flat",
            "lister_phone_number": "263712000111",
            "suburb": "Borrowdale",
            "property_type": "Garden flat",
            "price_per_month": 180,
            "bedrooms": 1,
            "description": "Quiet garden flat",
            "contact_name": "Rudo",
            "contact_phone": "263712000111",
        }
        fields.update(overrides)
        return create_listing(db, **fields)
    return _make
