import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import VerificationPurpose
from services.code_generator import CodeGenerator
from services.notification_gateway import NotificationGateway
from services.verification_errors import (
    CodeExpired,
    CodeMismatch,
    InvalidCodeFormat,
    InvalidEmail,
    NoSuchVerification,
    NotificationError,
    StorageError,
    TooManyAttempts,
    VerificationError,
)
from services.verification_policy import Evaluation, Outcome, VerificationPolicy
from services.verification_settings import VerificationSettings
from services.verification_store import VerificationRecordStore
from utils.email_utils import is_valid_email, mask_email, normalize_email

logger = logging.getLogger(__name__)

CODE_SENT_MESSAGE = "A verification code has been sent"
ALREADY_VERIFIED_MESSAGE = "This email has already been verified"
VERIFIED_MESSAGES: Dict[VerificationPurpose, str] = {
    VerificationPurpose.SIGNUP: "Email verification completed",
    VerificationPurpose.PASSWORD_RESET: "Verification completed. Please set a new password",
    VerificationPurpose.PASSWORD_CHANGE: "Verification completed. You can now change your password",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)  # naive UTC


@dataclass(frozen=True)
class RequestResult:
    message: str
    expires_in_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "expires_in": self.expires_in_seconds}


@dataclass(frozen=True)
class SubmitResult:
    message: str
    remaining_attempts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message}
        if self.remaining_attempts is not None:
            data["remaining_attempts"] = self.remaining_attempts
        return data


class EmailVerificationService:
    """
    Issues and checks email verification codes.

    Each call runs in its own session: the (email, purpose) key is locked, the
    latest record is loaded FOR UPDATE, the policy is applied and the result is
    committed before any failure is raised to the caller.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: NotificationGateway,
        settings: Optional[VerificationSettings] = None,
        generator: Optional[CodeGenerator] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings or VerificationSettings()
        self.generator = generator or CodeGenerator(self.settings.code_length)
        self.policy = VerificationPolicy(self.settings)
        self.clock = clock

    # ────────────────────────────────────────────────────────────
    # Operations
    # ────────────────────────────────────────────────────────────
    def request_code(self, email: str, purpose) -> RequestResult:
        email = self._checked_email(email)
        purpose = VerificationPurpose.parse(purpose)
        with self.session_factory() as db:
            store = VerificationRecordStore(db)
            store.lock(email, purpose)
            now = self.clock()
            prior = store.find_latest(email, purpose, for_update=True)

            if prior is not None and self.policy.release_expired_block(prior, now):
                store.save(prior)
                logger.info(f"Verification block lifted for {mask_email(email)} purpose={purpose.value}")

            try:
                self.policy.check_request(prior, now)
            except VerificationError:
                # a lifted block stays lifted even when the request is refused
                self._commit(db)
                raise

            code = self.generator.generate()
            record = store.create(self.policy.new_record(email, purpose, code, now))
            record_id = record.id

            try:
                self.gateway.send(email, code, purpose)
            except Exception as e:
                self._abandon(db, email, purpose)
                if isinstance(e, NotificationError):
                    raise
                raise NotificationError() from e

            self._commit(db)

        logger.info(f"Verification code issued for {mask_email(email)} purpose={purpose.value} id={record_id}")
        return RequestResult(CODE_SENT_MESSAGE, self.settings.ttl_seconds)

    def submit_code(self, email: str, purpose, code: str) -> SubmitResult:
        email = self._checked_email(email)
        purpose = VerificationPurpose.parse(purpose)
        code = code.strip() if isinstance(code, str) else code
        if not self.generator.is_valid_format(code):
            raise InvalidCodeFormat(
                f"Verification code must be {self.generator.length} digits"
            )
        with self.session_factory() as db:
            store = VerificationRecordStore(db)
            store.lock(email, purpose)
            now = self.clock()
            record = store.find_latest(email, purpose, for_update=True)
            if record is None:
                raise NoSuchVerification()

            evaluation = self.policy.evaluate(record, code, now)
            if evaluation.changed:
                store.save(record)
            self._commit(db)

        return self._result_for(evaluation, email, purpose)

    def is_verified(self, email: str, purpose) -> bool:
        email = normalize_email(email)
        purpose = VerificationPurpose.parse(purpose)
        with self.session_factory() as db:
            return VerificationRecordStore(db).exists_verified(email, purpose)

    # ────────────────────────────────────────────────────────────
    # Helpers
    # ────────────────────────────────────────────────────────────
    def _checked_email(self, email: str) -> str:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise InvalidEmail()
        return email

    def _commit(self, db: Session) -> None:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Verification commit failed: {e}")
            raise StorageError() from e

    def _abandon(self, db: Session, email: str, purpose: VerificationPurpose) -> None:
        """Gateway failed: discard or keep the new record according to settings."""
        if self.settings.rollback_on_send_failure:
            db.rollback()
            logger.warning(
                f"Verification email to {mask_email(email)} failed; record rolled back purpose={purpose.value}"
            )
        else:
            self._commit(db)
            logger.warning(
                f"Verification email to {mask_email(email)} failed; record kept purpose={purpose.value}"
            )

    def _result_for(
        self, evaluation: Evaluation, email: str, purpose: VerificationPurpose
    ) -> SubmitResult:
        outcome = evaluation.outcome
        if outcome is Outcome.VERIFIED:
            logger.info(f"Email verified {mask_email(email)} purpose={purpose.value}")
            return SubmitResult(VERIFIED_MESSAGES[purpose])
        if outcome is Outcome.ALREADY_VERIFIED:
            return SubmitResult(ALREADY_VERIFIED_MESSAGE)
        if outcome is Outcome.MISMATCH:
            raise CodeMismatch(evaluation.remaining_attempts)
        if outcome is Outcome.NOW_BLOCKED:
            logger.warning(
                f"Verification blocked for {mask_email(email)} purpose={purpose.value} "
                f"until={evaluation.blocked_until}"
            )
            minutes = self.settings.block_seconds // 60
            raise TooManyAttempts(
                evaluation.blocked_until,
                f"Too many failed attempts. Verification is blocked for {minutes} minutes",
            )
        if outcome is Outcome.BLOCKED:
            raise TooManyAttempts(evaluation.blocked_until)
        raise CodeExpired()


_default_service: Optional[EmailVerificationService] = None


def get_verification_service() -> EmailVerificationService:
    """Process-wide service wired to the configured database and SMTP gateway."""
    global _default_service
    if _default_service is None:
        from db import SessionLocal
        from services.notification_gateway import SmtpNotificationGateway

        settings = VerificationSettings.from_env()
        _default_service = EmailVerificationService(
            SessionLocal,
            SmtpNotificationGateway.from_env(ttl_seconds=settings.ttl_seconds),
            settings,
        )
    return _default_service
