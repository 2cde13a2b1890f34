# services/verification_policy.py
"""
State machine for a single verification record.

The policy never touches storage. It mutates the record it is handed and
reports what happened; the service decides what to persist and what to raise.

    Fresh(attempts 0..max-1) -> Verified
    Fresh -> Blocked -> (now > blocked_until) -> Fresh again, attempts reset
    Fresh -> Expired
"""
from __future__ import annotations

import enum
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from models import EmailVerification, VerificationPurpose
from services.verification_errors import ResendTooSoon, TooManyAttempts
from services.verification_settings import VerificationSettings


class Outcome(enum.Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    MISMATCH = "mismatch"
    NOW_BLOCKED = "now_blocked"
    BLOCKED = "blocked"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Evaluation:
    outcome: Outcome
    changed: bool
    remaining_attempts: Optional[int] = None
    blocked_until: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (Outcome.VERIFIED, Outcome.ALREADY_VERIFIED)


class VerificationPolicy:
    def __init__(self, settings: Optional[VerificationSettings] = None):
        self.settings = settings or VerificationSettings()

    # ────────────────────────────────────────────────────────────
    # Transitions
    # ────────────────────────────────────────────────────────────
    def release_expired_block(self, record: EmailVerification, now: datetime) -> bool:
        """
        Lift a block whose window has passed. The record becomes fresh again:
        attempts are reset and the outstanding code gets a new TTL window.
        Returns True when the record was modified.
        """
        if not record.blocked:
            return False
        # a block without an end time is never lifted automatically
        if record.blocked_until is None or not now > record.blocked_until:
            return False

        record.blocked = False
        record.blocked_until = None
        record.attempts = 0
        record.expires_at = now + self.settings.ttl
        return True

    def new_record(
        self, email: str, purpose: VerificationPurpose, code: str, now: datetime
    ) -> EmailVerification:
        return EmailVerification(
            email=email,
            purpose=purpose,
            code=code,
            verified=False,
            attempts=0,
            blocked=False,
            blocked_until=None,
            expires_at=now + self.settings.ttl,
            created_at=now,
        )

    # ────────────────────────────────────────────────────────────
    # Request side
    # ────────────────────────────────────────────────────────────
    def seconds_until_resend(self, prior: EmailVerification, now: datetime) -> int:
        """Whole seconds left in the resend cooldown, 0 when a new code may be issued."""
        elapsed = now - prior.created_at
        if elapsed >= self.settings.resend_cooldown:
            return 0
        return self.settings.resend_cooldown_seconds - int(elapsed.total_seconds())

    def check_request(self, prior: Optional[EmailVerification], now: datetime) -> None:
        """
        Raise if a new code may not be issued. Call ``release_expired_block``
        first so an elapsed block does not carry over.
        """
        if prior is None:
            return

        remaining = self.seconds_until_resend(prior, now)
        if remaining > 0:
            raise ResendTooSoon(remaining)

        if prior.blocked:
            raise TooManyAttempts(
                prior.blocked_until,
                "Too many failed attempts for this email. Try again later",
            )

    # ────────────────────────────────────────────────────────────
    # Submit side
    # ────────────────────────────────────────────────────────────
    def evaluate(self, record: EmailVerification, submitted: str, now: datetime) -> Evaluation:
        changed = self.release_expired_block(record, now)

        if record.blocked:
            return Evaluation(Outcome.BLOCKED, changed, blocked_until=record.blocked_until)

        if now > record.expires_at:
            return Evaluation(Outcome.EXPIRED, changed)

        if record.verified:
            return Evaluation(Outcome.ALREADY_VERIFIED, changed)

        if not hmac.compare_digest(record.code.encode(), submitted.encode()):
            record.attempts = (record.attempts or 0) + 1
            if record.attempts >= self.settings.max_attempts:
                record.blocked = True
                record.blocked_until = now + self.settings.block_duration
                return Evaluation(
                    Outcome.NOW_BLOCKED, True,
                    remaining_attempts=0, blocked_until=record.blocked_until,
                )
            return Evaluation(
                Outcome.MISMATCH, True,
                remaining_attempts=self.settings.max_attempts - record.attempts,
            )

        record.verified = True
        record.verified_at = now
        return Evaluation(Outcome.VERIFIED, True)
