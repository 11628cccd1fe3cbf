"""
ledger.py
---------
Hash-chained, append-only appointment ledger.
Each record carries the content hash of the record appended before it.
"""

import logging
import threading

from crypto_utils import content_hash
from models import GENESIS_HASH, create_appointment_record, create_sensitive_payload, serialize_payload

logger = logging.getLogger(__name__)


class ChainRaceError(Exception):
    """The ledger tail moved between reading it and appending to it."""


class LedgerBusyError(Exception):
    """The append lock could not be taken in time. Safe to retry."""


class DuplicateAppointmentIdError(Exception):
    """An appointment id is already present in the ledger."""


class LedgerChain:
    def __init__(self, store, cipher, lock_timeout=10.0, max_attempts=3):
        self.store = store
        self.cipher = cipher
        self.lock_timeout = lock_timeout
        self.max_attempts = max(1, max_attempts)
        # Shared by every append path: manual submissions and voice calls alike
        self._append_lock = threading.Lock()

    def _append_internal(self, conn, record, expected_previous):
        self.store.begin_append(conn)
        current_tail = self.store.get_last_hash(conn, for_update=True)
        if current_tail != expected_previous:
            raise ChainRaceError(
                f"ledger tail changed from {expected_previous[:12]} to {current_tail[:12]}"
            )
        if self.store.appointment_id_exists(conn, record["appointment_id"]):
            raise DuplicateAppointmentIdError(record["appointment_id"])
        self.store.append_row(conn, record)
        return record

    def append(self, appointment_id, name, payload, scheduled_time):
        """
        Encrypts the payload and appends a record linked to the current tail.

        Args:
            appointment_id (str): Unique appointment id.
            name (str): Patient name, stored in clear.
            payload (dict): Sensitive fields; see models.SENSITIVE_FIELDS.
            scheduled_time (str): Display string for the appointment slot.

        Returns:
            dict: The appended record.

        Raises:
            LedgerBusyError: The append lock was not acquired within lock_timeout.
            ChainRaceError: The tail kept moving for every attempt.
            DuplicateAppointmentIdError: appointment_id is already in the ledger.
        """
        payload = create_sensitive_payload(payload)
        digest = content_hash(name, payload)
        encrypted = self.cipher.encrypt(serialize_payload(payload))

        if not self._append_lock.acquire(timeout=self.lock_timeout):
            raise LedgerBusyError("timed out waiting for the ledger append lock")
        try:
            for attempt in range(1, self.max_attempts + 1):
                previous = self.store.execute_with_transaction(self.store.get_last_hash)
                record = create_appointment_record(
                    appointment_id=appointment_id,
                    name=name,
                    encrypted_payload=encrypted,
                    content_hash=digest,
                    previous_hash=previous,
                    scheduled_time=scheduled_time,
                )
                try:
                    self.store.execute_with_transaction(self._append_internal, record, previous)
                except ChainRaceError as e:
                    # Another process appended between our read and our write
                    logger.warning(f"Chain race on attempt {attempt}/{self.max_attempts}: {e}")
                    continue
                logger.info(f"Ledger record {appointment_id} linked to {previous[:12]}")
                return record
        finally:
            self._append_lock.release()

        logger.critical(f"Giving up on ledger append for {appointment_id} after {self.max_attempts} chain races")
        raise ChainRaceError(f"could not append {appointment_id} without forking the chain")

    def find_by_id(self, appointment_id):
        return self.store.execute_with_transaction(self.store.find_row_by_appointment_id, appointment_id)

    def records(self):
        return self.store.execute_with_transaction(self.store.read_rows)

    def verify_chain(self):
        """
        Walks the ledger in append order and checks every previous_hash link.

        Content hashes are not recomputed here since that needs the decrypted
        payload; see AppointmentService.audit_record for that check.

        Returns:
            dict: {'valid': bool, 'length': int, 'broken_at': appointment id or None}
        """
        rows = self.records()
        expected_previous = GENESIS_HASH
        for row in rows:
            if row["previous_hash"] != expected_previous:
                logger.error(f"Chain broken at {row['appointment_id']} (row {row['row_number']})")
                return {"valid": False, "length": len(rows), "broken_at": row["appointment_id"]}
            expected_previous = row["content_hash"]
        return {"valid": True, "length": len(rows), "broken_at": None}
