"""
session_store.py
----------------
In-memory scratch state for IVR calls that are still collecting answers.
Sessions are keyed by the telephony call id and evicted after a period of
inactivity.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from models import create_appointment_input

logger = logging.getLogger(__name__)

# Order in which the IVR asks its questions.
QUESTION_ORDER = ("language", "name", "age", "email", "symptoms", "doctor", "mode")


class CallSession:
    """Answers collected so far for one call."""

    def __init__(self, call_id: str, now: float):
        self.call_id = call_id
        self.answers: Dict[str, str] = {}
        self.language: Optional[str] = None
        self.created_at = now
        self.updated_at = now
        # Reentrant so a dialog step can hold it while calling the store helpers
        self.lock = threading.RLock()

    def expected_question(self) -> Optional[str]:
        if self.language is None:
            return "language"
        for question in QUESTION_ORDER[1:]:
            if question not in self.answers:
                return question
        return None

    def to_appointment_input(self) -> Dict:
        return create_appointment_input(
            name=self.answers.get("name"),
            age=self.answers.get("age"),
            email=self.answers.get("email"),
            symptoms=self.answers.get("symptoms"),
            doctor=self.answers.get("doctor"),
            mode=self.answers.get("mode"),
            language=self.language,
        )


class SessionStore:
    """
    Maps call ids to CallSession objects.

    The dictionary guard is held only long enough to look up, insert or pop
    an entry. Reads and writes of a session's answers happen under that
    session's own lock, so two calls never wait on each other. The IVR holds
    that lock for a whole dialog step through locked().
    """

    def __init__(self, ttl_seconds=900, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, CallSession] = {}
        self._guard = threading.Lock()
        self._scheduler = None

    def __len__(self):
        with self._guard:
            return len(self._sessions)

    def __contains__(self, call_id):
        with self._guard:
            return call_id in self._sessions

    def ensure(self, call_id: str) -> CallSession:
        """Return the session for call_id, creating an empty one if needed."""
        with self._guard:
            session = self._sessions.get(call_id)
            if session is None:
                session = CallSession(call_id, self._clock())
                self._sessions[call_id] = session
                logger.info(f"Started call session {call_id}")
            return session

    def _acquire(self, call_id: str) -> CallSession:
        """
        Take the lock of the session currently registered for call_id.

        If the session was drained or swept between lookup and locking, the
        stale object is released and a fresh lookup is made.
        """
        while True:
            session = self.ensure(call_id)
            session.lock.acquire()
            with self._guard:
                current = self._sessions.get(call_id)
            if current is session:
                return session
            session.lock.release()

    @contextmanager
    def locked(self, call_id: str):
        """Hold call_id's own lock for a whole dialog step. Other calls are unaffected."""
        session = self._acquire(call_id)
        try:
            yield session
        finally:
            session.lock.release()

    def set_answer(self, call_id: str, kind: str, value: str) -> None:
        with self.locked(call_id) as session:
            session.answers[kind] = value
            session.updated_at = self._clock()

    def set_language(self, call_id: str, language: str) -> None:
        with self.locked(call_id) as session:
            session.language = language
            session.updated_at = self._clock()

    def expected_question(self, call_id: str) -> Optional[str]:
        with self.locked(call_id) as session:
            return session.expected_question()

    def snapshot(self, call_id: str) -> Dict:
        """Copy the collected answers into an appointment input, keeping the session."""
        with self.locked(call_id) as session:
            return session.to_appointment_input()

    def drain(self, call_id: str) -> Optional[Dict]:
        """
        Remove the session and return its answers as an appointment input.

        Returns None if there was no session for call_id.
        """
        with self._guard:
            session = self._sessions.pop(call_id, None)
        if session is None:
            return None
        with session.lock:
            logger.info(f"Drained call session {call_id}")
            return session.to_appointment_input()

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Evict sessions idle for longer than ttl_seconds.

        A session whose lock is held by a dialog step is skipped; it is
        reconsidered on the next run.

        Returns:
            int: Number of sessions evicted.
        """
        now = self._clock() if now is None else now
        evicted = 0
        with self._guard:
            for call_id, session in list(self._sessions.items()):
                if now - session.updated_at <= self.ttl_seconds:
                    continue
                if not session.lock.acquire(blocking=False):
                    continue
                try:
                    del self._sessions[call_id]
                    evicted += 1
                finally:
                    session.lock.release()
        if evicted:
            logger.info(f"Evicted {evicted} abandoned call sessions")
        return evicted

    def start_sweeper(self, interval_seconds=60):
        """Run sweep() on a background scheduler every interval_seconds."""
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(self.sweep, "interval", seconds=interval_seconds)
        self._scheduler.start()
        logger.info(f"Session sweeper started (every {interval_seconds}s, ttl {self.ttl_seconds}s)")

    def stop_sweeper(self):
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Session sweeper stopped")
