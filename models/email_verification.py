# models/email_verification.py
import enum
from sqlalchemy import (
    Column, Text, TIMESTAMP, String, Boolean, Integer, BigInteger, Enum, Index,
)
from sqlalchemy.sql import func
from .base import Base


class VerificationPurpose(str, enum.Enum):
    SIGNUP = "signup"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"

    @classmethod
    def parse(cls, value) -> "VerificationPurpose":
        """Accept either the enum name ('PASSWORD_RESET') or its value ('password_reset')."""
        if isinstance(value, cls):
            return value
        raw = (value or "").strip()
        try:
            return cls[raw.upper()]
        except KeyError:
            return cls(raw.lower())


class EmailVerification(Base):
    __tablename__ = "email_verifications"

    # SQLite only autoincrements INTEGER primary keys
    id            = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    email         = Column(Text, nullable=False)
    purpose       = Column(Enum(VerificationPurpose, native_enum=False, length=32), nullable=False)
    code          = Column(String(12), nullable=False)  # zero-padded numeric code
    verified      = Column(Boolean, nullable=False, default=False)
    attempts      = Column(Integer, nullable=False, default=0)
    blocked       = Column(Boolean, nullable=False, default=False)
    blocked_until = Column(TIMESTAMP, nullable=True)
    expires_at    = Column(TIMESTAMP, nullable=False)
    created_at    = Column(TIMESTAMP, nullable=False, server_default=func.now())
    verified_at   = Column(TIMESTAMP, nullable=True)

    __table_args__ = (
        Index("ix_email_verifications_email_purpose_created", "email", "purpose", "created_at"),
        Index("ix_email_verifications_expires_at", "expires_at"),
        Index("ix_email_verifications_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EmailVerification id={self.id} purpose={self.purpose} "
            f"verified={self.verified} attempts={self.attempts} blocked={self.blocked}>"
        )
