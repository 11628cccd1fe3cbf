"""
crypto_utils.py
---------------
Content hashing, payload encryption and timing-safe secret comparison for the
appointment ledger.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
from typing import Dict

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from models import SENSITIVE_FIELDS

logger = logging.getLogger(__name__)

IV_SIZE = 16


class DecryptionError(Exception):
    """Raised when a stored payload cannot be decrypted with the current key."""


def sha256_hex(data) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def canonical_content(name: str, payload: Dict) -> bytes:
    """
    Builds the exact bytes that get hashed for a record.

    Layout is a JSON array [name, {sensitive fields}] with the fields in
    SENSITIVE_FIELDS order and compact separators.
    """
    ordered = {field: payload.get(field) for field in SENSITIVE_FIELDS}
    return json.dumps([name, ordered], separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def content_hash(name: str, payload: Dict) -> str:
    return sha256_hex(canonical_content(name, payload))


def derive_key(secret: str) -> bytes:
    """Derive a 256-bit AES key from the configured secret."""
    return hashlib.sha256(str(secret).encode("utf-8")).digest()


class PayloadCipher:
    """
    AES-256-CBC with PKCS7 padding and a random IV per message.

    Tokens are base64(iv + ciphertext). The key is derived once, when the
    cipher is built at startup, and reused for the lifetime of the process.
    """

    def __init__(self, secret: str):
        self._key = derive_key(secret)

    def encrypt(self, plaintext) -> str:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
            if len(raw) < IV_SIZE * 2 or len(raw) % IV_SIZE:
                raise ValueError("ciphertext has an invalid length")
            iv, ciphertext = raw[:IV_SIZE], raw[IV_SIZE:]
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError(str(e)) from e


def constant_time_equals(provided, expected) -> bool:
    """
    Compares two secrets without branching on where they differ.

    Both operands are zero-padded to the same length before hmac.compare_digest.
    The length check is folded in afterwards so 'abc' never matches 'abc\\x00'.
    The padded length itself can still reveal that the lengths differ.
    """
    provided_bytes = str(provided if provided is not None else "").encode("utf-8")
    expected_bytes = str(expected if expected is not None else "").encode("utf-8")
    max_len = max(len(provided_bytes), len(expected_bytes))
    same_content = hmac.compare_digest(
        provided_bytes.ljust(max_len, b"\x00"),
        expected_bytes.ljust(max_len, b"\x00"),
    )
    same_length = len(provided_bytes) == len(expected_bytes)
    return bool(same_content & same_length)
