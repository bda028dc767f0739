"""One-time codes for act signing.

Codes live behind ``OtpStore`` so the protocol does not care whether they are
kept in process memory or in the ``otp_sessions`` table. A code is consumed by
the first successful verification; a newer code for the same session replaces
any older one.
"""
from __future__ import annotations

import enum
import logging
import math
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from settlement import settings
from settlement.models import OtpChannel, OtpSession

logger = logging.getLogger(__name__)

CODE_DIGITS = 6


def _codes_equal(expected: str, given: str) -> bool:
    return secrets.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


@dataclass(frozen=True)
class OtpRecord:
    session_key: str
    code: str
    channel: OtpChannel
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class OtpStore(ABC):
    """Keyed storage for pending codes."""

    @abstractmethod
    def get(self, session_key: str) -> OtpRecord | None: ...

    @abstractmethod
    def put(self, record: OtpRecord) -> None:
        """Store ``record``, replacing any code already held for its session."""

    @abstractmethod
    def consume(self, session_key: str, code: str) -> bool:
        """Delete the session if it still holds ``code``; True only for the caller that deleted it."""

    @abstractmethod
    def record_failure(self, session_key: str) -> int:
        """Count a failed attempt and return the new total."""

    @abstractmethod
    def discard(self, session_key: str) -> None: ...

    @abstractmethod
    def purge_expired(self, now: datetime) -> int: ...


class InMemoryOtpStore(OtpStore):
    def __init__(self) -> None:
        self._records: dict[str, OtpRecord] = {}
        self._lock = threading.Lock()

    def get(self, session_key: str) -> OtpRecord | None:
        with self._lock:
            return self._records.get(session_key)

    def put(self, record: OtpRecord) -> None:
        with self._lock:
            self._records[record.session_key] = record

    def consume(self, session_key: str, code: str) -> bool:
        with self._lock:
            record = self._records.get(session_key)
            if record is None or not _codes_equal(record.code, code):
                return False
            del self._records[session_key]
            return True

    def record_failure(self, session_key: str) -> int:
        with self._lock:
            record = self._records.get(session_key)
            if record is None:
                return 0
            record = replace(record, attempts=record.attempts + 1)
            self._records[session_key] = record
            return record.attempts

    def discard(self, session_key: str) -> None:
        with self._lock:
            self._records.pop(session_key, None)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            stale = [key for key, record in self._records.items() if record.expired(now)]
            for key in stale:
                del self._records[key]
        return len(stale)


class SqlOtpStore(OtpStore):
    """Codes in the ``otp_sessions`` table, one short transaction per call."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _to_record(row: OtpSession) -> OtpRecord:
        return OtpRecord(
            session_key=row.session_key,
            code=row.code,
            channel=row.channel,
            issued_at=row.issued_at,
            expires_at=row.expires_at,
            attempts=row.attempts,
        )

    def get(self, session_key: str) -> OtpRecord | None:
        with self.session_factory() as db:
            row = db.get(OtpSession, session_key)
            return self._to_record(row) if row else None

    def put(self, record: OtpRecord) -> None:
        with self.session_factory() as db:
            db.merge(
                OtpSession(
                    session_key=record.session_key,
                    code=record.code,
                    channel=record.channel,
                    issued_at=record.issued_at,
                    expires_at=record.expires_at,
                    attempts=record.attempts,
                )
            )
            db.commit()

    def consume(self, session_key: str, code: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                delete(OtpSession).where(OtpSession.session_key == session_key, OtpSession.code == code)
            )
            db.commit()
            return result.rowcount == 1

    def record_failure(self, session_key: str) -> int:
        with self.session_factory() as db:
            db.execute(
                update(OtpSession)
                .where(OtpSession.session_key == session_key)
                .values(attempts=OtpSession.attempts + 1)
            )
            db.commit()
            attempts = db.execute(
                select(OtpSession.attempts).where(OtpSession.session_key == session_key)
            ).scalar_one_or_none()
            return attempts or 0

    def discard(self, session_key: str) -> None:
        with self.session_factory() as db:
            db.execute(delete(OtpSession).where(OtpSession.session_key == session_key))
            db.commit()

    def purge_expired(self, now: datetime) -> int:
        with self.session_factory() as db:
            result = db.execute(delete(OtpSession).where(OtpSession.expires_at <= now))
            db.commit()
            return result.rowcount or 0


class OtpDelivery(Protocol):
    def send(self, channel: OtpChannel, destination: str, code: str) -> None: ...


class LoggingDelivery:
    """Delivery stand-in for environments without a mail or Telegram bot configured."""

    def send(self, channel: OtpChannel, destination: str, code: str) -> None:
        logger.info("Signing code for %s via %s issued (delivery not configured)", destination, channel.value)


class VerificationOutcome(str, enum.Enum):
    VERIFIED = "verified"
    MISSING = "missing"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    EXHAUSTED = "exhausted"

    @property
    def ok(self) -> bool:
        return self is VerificationOutcome.VERIFIED


@dataclass(frozen=True)
class IssuedCode:
    record: OtpRecord
    delivered: bool


class OtpSigner:
    def __init__(
        self,
        store: OtpStore,
        delivery: OtpDelivery | None = None,
        clock: Callable[[], datetime] = datetime.now,
        ttl_seconds: int = settings.OTP_TTL_SECONDS,
        resend_cooldown_seconds: int = settings.OTP_RESEND_COOLDOWN_SECONDS,
        max_attempts: int = settings.OTP_MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        self.delivery = delivery or LoggingDelivery()
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self.resend_cooldown = timedelta(seconds=resend_cooldown_seconds)
        self.max_attempts = max_attempts

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"

    def issue(self, session_key: str, channel: OtpChannel, destination: str) -> IssuedCode:
        """Store a fresh code for ``session_key`` and hand it to the delivery channel.

        A delivery failure is logged and reported through ``delivered``; the
        stored code stays valid so the agent can ask for a resend.
        """

        now = self.clock()
        record = OtpRecord(
            session_key=session_key,
            code=self.generate_code(),
            channel=channel,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        self.store.put(record)
        logger.info("Issued signing code for session %s via %s", session_key, channel.value)

        try:
            self.delivery.send(channel, destination, record.code)
        except Exception as exc:
            logger.warning("Delivery of signing code for session %s via %s failed: %s", session_key, channel.value, exc)
            return IssuedCode(record=record, delivered=False)
        return IssuedCode(record=record, delivered=True)

    def seconds_until_resend(self, session_key: str) -> int:
        record = self.store.get(session_key)
        if record is None:
            return 0
        remaining = (record.issued_at + self.resend_cooldown - self.clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def verify(self, session_key: str, code: str) -> VerificationOutcome:
        """Check ``code`` for ``session_key``; a successful check consumes the session."""

        outcome = self._verify(session_key, (code or "").strip())
        if not outcome.ok:
            logger.warning("Signing code rejected for session %s: %s", session_key, outcome.value)
        return outcome

    def _verify(self, session_key: str, code: str) -> VerificationOutcome:
        record = self.store.get(session_key)
        if record is None:
            return VerificationOutcome.MISSING
        if record.expired(self.clock()):
            return VerificationOutcome.EXPIRED
        if self.max_attempts and record.attempts >= self.max_attempts:
            self.store.discard(session_key)
            return VerificationOutcome.EXHAUSTED
        if not _codes_equal(record.code, code):
            attempts = self.store.record_failure(session_key)
            if self.max_attempts and attempts >= self.max_attempts:
                self.store.discard(session_key)
                return VerificationOutcome.EXHAUSTED
            return VerificationOutcome.MISMATCH
        if not self.store.consume(session_key, code):
            # Another verifier consumed it first
            return VerificationOutcome.MISSING
        return VerificationOutcome.VERIFIED

    def sweep(self) -> int:
        removed = self.store.purge_expired(self.clock())
        if removed:
            logger.info("Purged %s expired signing codes", removed)
        return removed
