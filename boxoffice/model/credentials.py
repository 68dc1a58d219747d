"""
One-time ticket credentials.

The plaintext (32 upper-case hex chars, 128 bits) is handed out once: to the
caller of create_order and to the delivery outbox. Orders only keep the sha256.
"""
from __future__ import annotations
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional

import orjson

CREDENTIAL_BYTES = 16


@dataclass(frozen=True)
class Credential:
    plaintext: str
    hash: str

    def __repr__(self) -> str:
        # keep the secret out of logs and tracebacks
        return f"Credential(hash={self.hash[:12]}...)"


def hash_credential(plaintext: str) -> str:
    return hashlib.sha256(plaintext.strip().upper().encode()).hexdigest()


def issue() -> Credential:
    plaintext = secrets.token_hex(CREDENTIAL_BYTES).upper()
    return Credential(plaintext=plaintext, hash=hash_credential(plaintext))


def verify(presented: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_credential(presented), stored_hash)


def qr_payload(order_number: str, plaintext: str,
               event_name: Optional[str] = None,
               tier_name: Optional[str] = None) -> str:
    """What the ticket QR code encodes. Scanners send back `qr`."""
    return orjson.dumps({
        "id": order_number,
        "qr": plaintext,
        "event": event_name,
        "tier": tier_name,
    }).decode()
