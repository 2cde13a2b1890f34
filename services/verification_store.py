# services/verification_store.py
import hashlib
import logging
from datetime import datetime
from functools import wraps
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import EmailVerification, VerificationPurpose
from services.verification_errors import StorageError

logger = logging.getLogger(__name__)


def _storage_call(fn):
    """Re-raise driver/ORM failures as StorageError. No retries."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Verification store {fn.__name__} failed: {e}")
            raise StorageError() from e
    return wrapper


def advisory_lock_key(email: str, purpose: VerificationPurpose) -> int:
    """Signed 64-bit key for pg_advisory_xact_lock, stable per (email, purpose)."""
    digest = hashlib.sha256(f"{purpose.value}:{email}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class VerificationRecordStore:
    """
    Persistence for EmailVerification rows, bound to one session/transaction.

    Every lookup is keyed by (email, purpose); records of different purposes
    never see each other. Committing is left to the caller.
    """

    def __init__(self, db: Session):
        self.db = db

    @_storage_call
    def lock(self, email: str, purpose: VerificationPurpose) -> None:
        """
        Serialize request/submit traffic for one (email, purpose) until the
        surrounding transaction ends. PostgreSQL only; elsewhere the row lock
        taken by ``find_latest(for_update=True)`` is all there is.
        """
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.execute(select(func.pg_advisory_xact_lock(advisory_lock_key(email, purpose))))

    @_storage_call
    def create(self, record: EmailVerification) -> EmailVerification:
        self.db.add(record)
        self.db.flush()
        return record

    @_storage_call
    def find_latest(
        self, email: str, purpose: VerificationPurpose, for_update: bool = False
    ) -> Optional[EmailVerification]:
        stmt = (
            select(EmailVerification)
            .where(EmailVerification.email == email, EmailVerification.purpose == purpose)
            .order_by(EmailVerification.created_at.desc(), EmailVerification.id.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().first()

    @_storage_call
    def save(self, record: EmailVerification) -> EmailVerification:
        self.db.add(record)
        self.db.flush()
        return record

    @_storage_call
    def exists_verified(self, email: str, purpose: VerificationPurpose) -> bool:
        stmt = select(EmailVerification.id).where(
            EmailVerification.email == email,
            EmailVerification.purpose == purpose,
            EmailVerification.verified.is_(True),
        ).limit(1)
        return self.db.execute(stmt).first() is not None

    # ────────────────────────────────────────────────────────────
    # Retention (scheduled cleanup only)
    # ────────────────────────────────────────────────────────────
    @_storage_call
    def sweep_expired_unverified(self, older_than: datetime) -> int:
        """Delete unverified rows created before ``older_than``. Live blocks are kept."""
        return (
            self.db.query(EmailVerification)
            .filter(
                EmailVerification.verified.is_(False),
                EmailVerification.created_at < older_than,
                or_(
                    EmailVerification.blocked.is_(False),
                    EmailVerification.blocked_until < older_than,
                ),
            )
            .delete(synchronize_session=False)
        )

    @_storage_call
    def sweep_old_verified(self, older_than: datetime) -> int:
        """Delete verified rows whose verification happened before ``older_than``."""
        return (
            self.db.query(EmailVerification)
            .filter(
                EmailVerification.verified.is_(True),
                EmailVerification.verified_at < older_than,
            )
            .delete(synchronize_session=False)
        )

    @_storage_call
    def count_expired(self, now: datetime) -> int:
        return (
            self.db.query(func.count(EmailVerification.id))
            .filter(EmailVerification.expires_at < now)
            .scalar()
        )

    @_storage_call
    def count_old_verified(self, cutoff: datetime) -> int:
        return (
            self.db.query(func.count(EmailVerification.id))
            .filter(
                EmailVerification.verified.is_(True),
                EmailVerification.verified_at < cutoff,
            )
            .scalar()
        )
