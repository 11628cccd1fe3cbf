"""
appointment_service.py
----------------------
Finalizes appointments from the API or a finished IVR call, and serves
restricted lookups from the ledger.
"""

import logging
import random
import secrets
from datetime import datetime, timedelta

from dateutil import tz

from crypto_utils import DecryptionError, constant_time_equals, content_hash
from ledger import DuplicateAppointmentIdError
from models import create_sensitive_payload, deserialize_payload

logger = logging.getLogger(__name__)

RESTRICTED = "INVALID KEY"
DECRYPTION_FAILED = "DECRYPTION FAILED"

CLINIC_TZ = tz.gettz("Asia/Kolkata")
FIRST_SLOT_HOUR = 9
LAST_SLOT_HOUR = 16
TIME_DISPLAY_FORMAT = "%d %b %Y, %I:%M %p"

MAX_ID_ATTEMPTS = 5


class ValidationError(Exception):
    """A required appointment field is missing."""


class NotFoundError(Exception):
    """No ledger record has the requested appointment id."""


class AppointmentService:
    def __init__(self, ledger, cipher, hospital_key, clock=None, rng=None):
        self.ledger = ledger
        self.cipher = cipher
        self._hospital_key = hospital_key
        self._clock = clock or (lambda: datetime.now(CLINIC_TZ))
        self._rng = rng or random.Random()

    def generate_appointment_id(self):
        """Time-ordered id with 32 random bits, e.g. APPT-20261019-9F3A61C2."""
        now = self._clock()
        return f"APPT-{now.strftime('%Y%m%d')}-{secrets.token_hex(4).upper()}"

    def schedule_slot(self):
        """Pick a slot tomorrow between 09:00 and 16:59 clinic time."""
        now = self._clock().astimezone(CLINIC_TZ)
        slot = (now + timedelta(days=1)).replace(
            hour=self._rng.randint(FIRST_SLOT_HOUR, LAST_SLOT_HOUR),
            minute=self._rng.randint(0, 59),
            second=0,
            microsecond=0,
        )
        return slot.strftime(TIME_DISPLAY_FORMAT)

    def finalize(self, appointment_input):
        """
        Validates an appointment and appends it to the ledger.

        Args:
            appointment_input (dict): See models.create_appointment_input.

        Returns:
            dict: id, content_hash, previous_hash and scheduled_time of the new record.

        Raises:
            ValidationError: name or email is missing.
        """
        name = (appointment_input.get("name") or "").strip()
        email = (appointment_input.get("email") or "").strip()
        if not name or not email:
            raise ValidationError("Name and Email required")

        payload = create_sensitive_payload(appointment_input)
        scheduled_time = self.schedule_slot()

        for attempt in range(MAX_ID_ATTEMPTS):
            appointment_id = self.generate_appointment_id()
            try:
                record = self.ledger.append(appointment_id, name, payload, scheduled_time)
                break
            except DuplicateAppointmentIdError:
                logger.warning(f"Appointment id collision on {appointment_id}, regenerating")
        else:
            raise RuntimeError("could not generate a unique appointment id")

        logger.info(f"Appointment {record['appointment_id']} stored for {scheduled_time}")
        return {
            "id": record["appointment_id"],
            "content_hash": record["content_hash"],
            "previous_hash": record["previous_hash"],
            "scheduled_time": record["scheduled_time"],
        }

    def _decrypt_payload(self, record):
        return deserialize_payload(self.cipher.decrypt(record["encrypted_payload"]))

    def lookup(self, appointment_id, provided_key=None):
        """
        Looks up an appointment; sensitive fields are only decrypted for the hospital key.

        Returns:
            dict: Record view whose 'original_data' is the decrypted payload,
            RESTRICTED, or DECRYPTION_FAILED.

        Raises:
            ValidationError: appointment_id is blank.
            NotFoundError: No record has this id.
        """
        if not appointment_id or not str(appointment_id).strip():
            raise ValidationError("appointment_id is required")

        record = self.ledger.find_by_id(appointment_id)
        if record is None:
            raise NotFoundError("Appointment not found")

        original_data = RESTRICTED
        if provided_key and constant_time_equals(provided_key, self._hospital_key):
            try:
                original_data = self._decrypt_payload(record)
            except (DecryptionError, ValueError) as e:
                logger.error(f"Could not decrypt appointment {record['appointment_id']}: {e}")
                original_data = DECRYPTION_FAILED
        else:
            logger.info(f"Restricted lookup for appointment {record['appointment_id']}")

        return {
            "appointment_id": record["appointment_id"],
            "name": record["name"],
            "original_data": original_data,
            "content_hash": record["content_hash"],
            "previous_hash": record["previous_hash"],
            "scheduled_time": record["scheduled_time"],
            "row_number": record["row_number"],
        }

    def audit_record(self, record):
        """True if the stored content hash matches the decrypted payload."""
        try:
            payload = self._decrypt_payload(record)
        except (DecryptionError, ValueError):
            return False
        return constant_time_equals(content_hash(record["name"], payload), record["content_hash"])

    def verify_ledger(self, audit_content=False):
        """
        Checks every chain link and, optionally, every record's content hash.

        Returns:
            dict: Result of LedgerChain.verify_chain, plus 'tampered' ids when audited.
        """
        result = self.ledger.verify_chain()
        if audit_content:
            tampered = [r["appointment_id"] for r in self.ledger.records() if not self.audit_record(r)]
            result["tampered"] = tampered
            result["valid"] = result["valid"] and not tampered
        return result
