# services/verification_settings.py
import os
from dataclasses import dataclass
from datetime import timedelta


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class VerificationSettings:
    """Tunable limits for email verification. Defaults are the production values."""

    code_length: int = 6
    ttl_seconds: int = 180
    max_attempts: int = 5
    block_seconds: int = 30 * 60
    resend_cooldown_seconds: int = 60
    # delete the just-inserted record when the notification gateway fails
    rollback_on_send_failure: bool = True
    retention_hours: int = 24

    def __post_init__(self):
        if self.code_length < 1:
            raise ValueError("code_length must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        for name in ("ttl_seconds", "block_seconds", "resend_cooldown_seconds", "retention_hours"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)

    @property
    def block_duration(self) -> timedelta:
        return timedelta(seconds=self.block_seconds)

    @property
    def resend_cooldown(self) -> timedelta:
        return timedelta(seconds=self.resend_cooldown_seconds)

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)

    @classmethod
    def from_env(cls) -> "VerificationSettings":
        return cls(
            code_length=_env_int("VERIFICATION_CODE_LENGTH", cls.code_length),
            ttl_seconds=_env_int("VERIFICATION_TTL_SECONDS", cls.ttl_seconds),
            max_attempts=_env_int("VERIFICATION_MAX_ATTEMPTS", cls.max_attempts),
            block_seconds=_env_int("VERIFICATION_BLOCK_SECONDS", cls.block_seconds),
            resend_cooldown_seconds=_env_int(
                "VERIFICATION_RESEND_COOLDOWN_SECONDS", cls.resend_cooldown_seconds
            ),
            rollback_on_send_failure=_env_bool(
                "VERIFICATION_ROLLBACK_ON_SEND_FAILURE", cls.rollback_on_send_failure
            ),
            retention_hours=_env_int("VERIFICATION_RETENTION_HOURS", cls.retention_hours),
        )
