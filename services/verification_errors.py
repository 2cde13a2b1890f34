"""Typed outcomes for the email verification flow.

Every failure the verification service can report is a ``VerificationError``.
Each carries a stable ``code`` and ``http_status`` so the HTTP layer can map it
without inspecting messages.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class VerificationError(Exception):
    """Base class for email verification failures."""

    code = "VERIFICATION_ERROR"
    http_status = 400
    default_message = "Email verification failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def context(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        data.update(self.context())
        return {"error": data}


class InvalidEmail(VerificationError):
    code = "INVALID_EMAIL"
    default_message = "A valid email address is required"


class InvalidCodeFormat(VerificationError):
    code = "INVALID_CODE_FORMAT"
    default_message = "Verification code must be numeric"


class ResendTooSoon(VerificationError):
    code = "RESEND_TOO_SOON"
    http_status = 429

    def __init__(self, seconds_remaining: int):
        self.seconds_remaining = seconds_remaining
        super().__init__(f"A new code can be requested in {seconds_remaining} seconds")

    def context(self) -> Dict[str, Any]:
        return {"seconds_remaining": self.seconds_remaining}


class TooManyAttempts(VerificationError):
    code = "TOO_MANY_ATTEMPTS"
    http_status = 429

    def __init__(self, blocked_until: Optional[datetime], message: Optional[str] = None):
        self.blocked_until = blocked_until
        if message is None:
            until = blocked_until.isoformat() if blocked_until else "later"
            message = f"Too many failed attempts. Try again after {until}"
        super().__init__(message)

    def context(self) -> Dict[str, Any]:
        until = self.blocked_until.isoformat() + "Z" if self.blocked_until else None
        return {"blocked_until": until}


class CodeExpired(VerificationError):
    code = "CODE_EXPIRED"
    http_status = 410
    default_message = "The verification code has expired. Request a new code"


class CodeMismatch(VerificationError):
    """Wrong code. The failed attempt has already been recorded."""

    code = "CODE_MISMATCH"
    http_status = 400

    def __init__(self, remaining_attempts: int):
        self.remaining_attempts = remaining_attempts
        super().__init__("The verification code does not match")

    def context(self) -> Dict[str, Any]:
        return {"remaining_attempts": self.remaining_attempts}


class NoSuchVerification(VerificationError):
    code = "NO_SUCH_VERIFICATION"
    http_status = 404
    default_message = "No verification has been requested for this email"


class NotificationError(VerificationError):
    code = "NOTIFICATION_FAILED"
    http_status = 502
    default_message = "The verification email could not be sent"


class StorageError(VerificationError):
    """Infrastructure fault from the record store. Surfaced as-is, never retried here."""

    code = "STORAGE_ERROR"
    http_status = 500
    default_message = "Verification storage is unavailable"
