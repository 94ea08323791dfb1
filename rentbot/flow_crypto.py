"""
WhatsApp Flow encrypted-exchange codec.

Requests carry an AES key encrypted with our RSA public key (OAEP/SHA-256),
and a payload encrypted with AES-GCM under that key. The 16-byte tag trails
the ciphertext. Responses are encrypted with the same key and a response IV
derived from the request IV.
"""

import base64
import binascii
import json
import logging
import os
from typing import Any, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from rentbot.schemas import FlowExchange

logger = logging.getLogger(__name__)

TAG_LENGTH = 16
AES_KEY_LENGTHS = (16, 24, 32)
IV_MODES = ("invert", "reverse")


class FlowCryptoError(Exception):
    """Flow payload could not be decoded, decrypted or parsed."""
    pass


def load_private_key(value: str, passphrase: Optional[str] = None) -> rsa.RSAPrivateKey:
    """
    Load the Flow RSA private key.

    Args:
        value: PEM text (literal "\\n" sequences allowed) or a path to a PEM file
        passphrase: Optional key passphrase
    """
    if not value:
        raise FlowCryptoError("Flow private key is not configured")

    if "-----BEGIN" in value:
        pem = value.replace("\\n", "\n").encode("utf-8")
    else:
        path = os.path.expanduser(value)
        try:
            with open(path, "rb") as fh:
                pem = fh.read()
        except OSError as e:
            raise FlowCryptoError(f"Cannot read Flow private key file: {e}")

    try:
        key = serialization.load_pem_private_key(
            pem,
            password=passphrase.encode("utf-8") if passphrase else None,
        )
    except (ValueError, TypeError) as e:
        raise FlowCryptoError(f"Invalid Flow private key: {e}")

    if not isinstance(key, rsa.RSAPrivateKey):
        raise FlowCryptoError("Flow private key must be an RSA key")
    return key


def _b64decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise FlowCryptoError(f"{field} is not valid base64")


def decrypt_aes_key(encrypted_key_b64: str, private_key: rsa.RSAPrivateKey) -> bytes:
    """RSA-OAEP (MGF1-SHA256, SHA-256, no label) decrypt of the per-request AES key."""
    encrypted_key = _b64decode(encrypted_key_b64, "encrypted_aes_key")
    try:
        return private_key.decrypt(
            encrypted_key,
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=None,
            ),
        )
    except ValueError:
        raise FlowCryptoError("Failed to decrypt AES key")


def _aes_gcm(key: bytes, iv: bytes, tag: Optional[bytes] = None) -> Cipher:
    # algorithms.AES picks AES-128/192/256 from the key length
    if len(key) not in AES_KEY_LENGTHS:
        raise FlowCryptoError(f"Unsupported AES key length: {len(key)} bytes")
    try:
        return Cipher(algorithms.AES(key), modes.GCM(iv, tag))
    except ValueError as e:
        raise FlowCryptoError(f"Invalid AES-GCM parameters: {e}")


def decrypt_flow_data(cipher_b64: str, key: bytes, iv_b64: str) -> dict[str, Any]:
    """
    Decrypt and authenticate a Flow payload.

    Raises:
        FlowCryptoError: bad base64, truncated input, tag mismatch or non-JSON plaintext
    """
    data = _b64decode(cipher_b64, "encrypted_flow_data")
    iv = _b64decode(iv_b64, "initial_vector")
    if len(data) < TAG_LENGTH:
        raise FlowCryptoError("Encrypted flow data is shorter than the GCM tag")

    ciphertext, tag = data[:-TAG_LENGTH], data[-TAG_LENGTH:]
    decryptor = _aes_gcm(key, iv, tag).decryptor()
    try:
        plaintext = decryptor.update(ciphertext) + decryptor.finalize()
    except InvalidTag:
        raise FlowCryptoError("GCM authentication tag mismatch")

    try:
        decoded = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise FlowCryptoError("Decrypted flow data is not JSON")
    if not isinstance(decoded, dict):
        raise FlowCryptoError("Decrypted flow data is not a JSON object")
    return decoded


def response_iv(request_iv: bytes, iv_mode: str = "invert") -> bytes:
    """
    IV for the encrypted response.

    "invert" flips every bit of the request IV (the WhatsApp Flows convention);
    "reverse" reverses its byte order.
    """
    if iv_mode == "invert":
        return bytes(b ^ 0xFF for b in request_iv)
    if iv_mode == "reverse":
        return request_iv[::-1]
    raise FlowCryptoError(f"Unknown IV mode {iv_mode!r}, expected one of {IV_MODES}")


def encrypt_flow_response(
    response: dict[str, Any],
    key: bytes,
    request_iv: bytes,
    iv_mode: str = "invert",
) -> str:
    """Encrypt a JSON response; returns base64(ciphertext || tag)."""
    encryptor = _aes_gcm(key, response_iv(request_iv, iv_mode)).encryptor()
    ciphertext = encryptor.update(json.dumps(response).encode("utf-8")) + encryptor.finalize()
    return base64.b64encode(ciphertext + encryptor.tag).decode("utf-8")


def decrypt_request(
    exchange: FlowExchange,
    private_key: rsa.RSAPrivateKey,
) -> Tuple[dict[str, Any], bytes, bytes]:
    """
    Decrypt a whole Flow exchange.

    Returns:
        Tuple of (decrypted payload, AES key, request IV bytes)
    """
    aes_key = decrypt_aes_key(exchange.encrypted_aes_key, private_key)
    payload = decrypt_flow_data(exchange.encrypted_flow_data, aes_key, exchange.initial_vector)
    request_iv = _b64decode(exchange.initial_vector, "initial_vector")
    logger.debug(f"Decrypted flow request: action={payload.get('action')}, screen={payload.get('screen')}")
    return payload, aes_key, request_iv
