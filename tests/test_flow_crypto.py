"""
Tests for the Flow crypto codec and the encrypted Flow endpoint.

Tests cover:
- AES-GCM round trip for every AES key size
- Tampered, truncated and malformed envelopes
- Response IV derivation
- POST /webhooks/whatsapp with encrypted ping, INIT and SEARCH requests
"""

import base64
import json
import os

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from conftest import TEST_PHONE, post_webhook
from rentbot.config import settings
from rentbot.flow_crypto import (
    FlowCryptoError,
    decrypt_aes_key,
    decrypt_flow_data,
    encrypt_flow_response,
    load_private_key,
    response_iv,
)
from rentbot.state_store import SEARCH_RESULTS, get_state


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def private_pem(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def encrypt_request(public_key, payload: dict, aes_key: bytes = None, iv: bytes = None) -> tuple[dict, bytes, bytes]:
    """Build a Flow data-exchange body the way the WhatsApp client does."""
    aes_key = aes_key or os.urandom(16)
    iv = iv or os.urandom(16)
    encrypted_key = public_key.encrypt(
        aes_key,
        padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None),
    )
    encrypted_data = AESGCM(aes_key).encrypt(iv, json.dumps(payload).encode("utf-8"), None)
    body = {
        "encrypted_flow_data": b64(encrypted_data),
        "encrypted_aes_key": b64(encrypted_key),
        "initial_vector": b64(iv),
    }
    return body, aes_key, iv


def decrypt_response(text: str, aes_key: bytes, iv: bytes) -> dict:
    flipped = bytes(b ^ 0xFF for b in iv)
    return json.loads(AESGCM(aes_key).decrypt(flipped, base64.b64decode(text), None))


class TestCodec:
    @pytest.mark.parametrize("key_size", [16, 24, 32])
    def test_round_trip(self, key_size):
        key = os.urandom(key_size)
        iv = os.urandom(16)
        payload = {"screen": "RESULTS", "data": {"resultsCount": 2, "q": "borrowdale"}}

        encrypted = encrypt_flow_response(payload, key, iv)

        assert decrypt_flow_data(encrypted, key, b64(response_iv(iv))) == payload

    def test_interoperates_with_aesgcm(self):
        key, iv = os.urandom(32), os.urandom(12)
        sealed = AESGCM(key).encrypt(iv, b'{"action": "INIT"}', None)

        assert decrypt_flow_data(b64(sealed), key, b64(iv)) == {"action": "INIT"}

    def test_tampered_ciphertext_rejected(self):
        key, iv = os.urandom(16), os.urandom(16)
        sealed = bytearray(AESGCM(key).encrypt(iv, b'{"a": 1}', None))
        sealed[0] ^= 0x01

        with pytest.raises(FlowCryptoError):
            decrypt_flow_data(b64(bytes(sealed)), key, b64(iv))

    def test_truncated_input_rejected(self):
        with pytest.raises(FlowCryptoError):
            decrypt_flow_data(b64(b"short"), os.urandom(16), b64(os.urandom(16)))

    def test_bad_base64_rejected(self):
        with pytest.raises(FlowCryptoError):
            decrypt_flow_data("%%%not-base64%%%", os.urandom(16), b64(os.urandom(16)))

    def test_unsupported_key_length(self):
        with pytest.raises(FlowCryptoError):
            encrypt_flow_response({"a": 1}, os.urandom(20), os.urandom(16))

    def test_response_iv_modes(self):
        iv = bytes(range(16))

        assert response_iv(iv) == bytes(255 - b for b in range(16))
        assert response_iv(iv, "reverse") == bytes(reversed(range(16)))
        with pytest.raises(FlowCryptoError):
            response_iv(iv, "sideways")

    def test_aes_key_unwrap(self, private_key):
        body, aes_key, _ = encrypt_request(private_key.public_key(), {"action": "ping"})

        assert decrypt_aes_key(body["encrypted_aes_key"], private_key) == aes_key

    def test_aes_key_unwrap_with_wrong_key(self, private_key):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        body, _, _ = encrypt_request(other.public_key(), {"action": "ping"})

        with pytest.raises(FlowCryptoError):
            decrypt_aes_key(body["encrypted_aes_key"], private_key)

    def test_load_private_key_literal_and_file(self, private_pem, tmp_path):
        escaped = private_pem.replace("\n", "\\n")
        key_file = tmp_path / "flow.pem"
        key_file.write_text(private_pem)

        assert isinstance(load_private_key(escaped), rsa.RSAPrivateKey)
        assert isinstance(load_private_key(str(key_file)), rsa.RSAPrivateKey)
        with pytest.raises(FlowCryptoError):
            load_private_key(str(tmp_path / "missing.pem"))


class TestFlowEndpoint:
    @pytest.fixture(autouse=True)
    def flow_key(self, monkeypatch, private_pem):
        monkeypatch.setattr(settings, "WHATSAPP_FLOW_PRIVATE_KEY", private_pem)

    def test_encrypted_ping(self, client, private_key):
        body, aes_key, iv = encrypt_request(private_key.public_key(), {"version": "3.0", "action": "ping"})

        response = post_webhook(client, body)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert decrypt_response(response.text, aes_key, iv) == {"data": {"status": "active"}}

    def test_init_returns_search_screen(self, client, private_key):
        body, aes_key, iv = encrypt_request(private_key.public_key(), {"action": "INIT", "flow_token": TEST_PHONE})

        result = decrypt_response(post_webhook(client, body).text, aes_key, iv)

        assert result["screen"] == "SEARCH"
        assert {"cities", "suburbs", "propertyCategories", "propertyTypes", "bedrooms"} <= set(result["data"])

    def test_error_notification_acknowledged(self, client, private_key):
        payload = {"action": "data_exchange", "data": {"error": "invalid-screen", "error_message": "boom"}}
        body, aes_key, iv = encrypt_request(private_key.public_key(), payload)

        result = decrypt_response(post_webhook(client, body).text, aes_key, iv)

        assert result == {"data": {"acknowledged": True}}

    def test_search_returns_results_and_records_state(self, client, db, private_key, make_listing):
        listing = make_listing(title="Avondale flat", suburb="Avondale", price_per_month=250)
        make_listing(title="Too pricey", suburb="Avondale", price_per_month=2000)
        payload = {
            "action": "data_exchange",
            "screen": "SEARCH",
            "flow_token": TEST_PHONE,
            "data": {"selected_suburb": "avondale", "max_price": "$500"},
        }
        body, aes_key, iv = encrypt_request(private_key.public_key(), payload)

        result = decrypt_response(post_webhook(client, body).text, aes_key, iv)

        assert result["screen"] == "RESULTS"
        data = result["data"]
        assert data["resultsCount"] == 1
        assert data["listings"][0]["id"] == listing.id
        assert data["hasResult0"] is True
        assert data["hasResult1"] is False
        assert "Avondale flat" in data["listingText0"]
        snapshot = get_state(db, TEST_PHONE)
        assert snapshot.state == SEARCH_RESULTS
        assert snapshot.metadata["listingIds"] == [listing.id]

    def test_tampered_request_is_421(self, client, private_key):
        body, _, _ = encrypt_request(private_key.public_key(), {"action": "ping"})
        body["encrypted_flow_data"] = b64(b"x" * 40)

        response = post_webhook(client, body)

        assert response.status_code == 421
        assert response.json() == {"ok": False, "note": "decrypt-failed"}

    def test_missing_private_key_is_500(self, client, private_key, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_FLOW_PRIVATE_KEY", "")
        body, _, _ = encrypt_request(private_key.public_key(), {"action": "ping"})

        response = post_webhook(client, body)

        assert response.status_code == 500
        assert response.json() == {"ok": False, "note": "missing-private-key"}
