"""
models.py
---------
Defines data models for appointment input, the encrypted sensitive payload and
ledger records.
Uses Python dictionaries for simplicity, with a fixed field order wherever the
content is hashed.
"""

import json
from typing import Dict, Optional, Any

GENESIS_HASH = "GENESIS"

APPOINTMENT_FIELDS = ("name", "age", "email", "symptoms", "doctor", "mode", "language")

# Canonical order of the encrypted fields. Hash input depends on it.
SENSITIVE_FIELDS = ("age", "email", "symptoms", "doctor", "mode", "language")

RECORD_COLUMNS = (
    "appointment_id",
    "name",
    "encrypted_payload",
    "content_hash",
    "previous_hash",
    "scheduled_time",
)


def create_appointment_input(
    name: Optional[str] = None,
    age: Any = None,
    email: Optional[str] = None,
    symptoms: Optional[str] = None,
    doctor: Optional[str] = None,
    mode: Optional[str] = None,
    language: Optional[str] = None,
) -> Dict:
    """
    Creates an appointment input, from either the API or a drained call session.

    Args:
        name (str): Patient's name, stored in clear.
        age: Patient's age as submitted.
        email (str): Patient's email address.
        symptoms (str): Described symptoms.
        doctor (str): Chosen doctor.
        mode (str): 'online' or 'offline'.
        language (str): Language the patient used.

    Returns:
        dict: Structured appointment input.
    """
    return {
        "name": name,
        "age": age,
        "email": email,
        "symptoms": symptoms,
        "doctor": doctor,
        "mode": mode,
        "language": language,
    }


def create_sensitive_payload(appointment_input: Dict) -> Dict:
    """Pick the fields that get encrypted, in canonical order."""
    return {field: appointment_input.get(field) for field in SENSITIVE_FIELDS}


def serialize_payload(payload: Dict) -> str:
    """
    Serializes a sensitive payload with the canonical field order.

    Field order never depends on how the dict was built; unknown keys are dropped.
    """
    ordered = {field: payload.get(field) for field in SENSITIVE_FIELDS}
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False)


def deserialize_payload(text: str) -> Dict:
    return json.loads(text)


def create_appointment_record(
    appointment_id: str,
    name: str,
    encrypted_payload: str,
    content_hash: str,
    previous_hash: str,
    scheduled_time: str,
    row_number: Optional[int] = None,
) -> Dict:
    """
    Creates a ledger record. Records are never modified after they are appended.

    Returns:
        dict: Structured appointment record.
    """
    return {
        "appointment_id": appointment_id,
        "name": name,
        "encrypted_payload": encrypted_payload,
        "content_hash": content_hash,
        "previous_hash": previous_hash,
        "scheduled_time": scheduled_time,
        "row_number": row_number,
    }
