from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import T0, ScriptedGenerator
from models import VerificationPurpose
from services.email_verification_service import (
    ALREADY_VERIFIED_MESSAGE,
    EmailVerificationService,
)
from services.verification_errors import (
    CodeExpired,
    CodeMismatch,
    InvalidCodeFormat,
    InvalidEmail,
    NoSuchVerification,
    NotificationError,
    ResendTooSoon,
    StorageError,
    TooManyAttempts,
)
from services.verification_settings import VerificationSettings
from services.verification_store import VerificationRecordStore

SIGNUP = VerificationPurpose.SIGNUP
RESET = VerificationPurpose.PASSWORD_RESET


@pytest.fixture
def generator():
    return ScriptedGenerator("042017", "550011", "731902")


def block(service, clock, start_second=1, purpose=SIGNUP):
    """Five wrong submissions, one per second. Returns the TooManyAttempts from the fifth."""
    for i in range(4):
        clock.at(seconds=start_second + i)
        with pytest.raises(CodeMismatch):
            service.submit_code("a@b.com", purpose, "000000")
    clock.at(seconds=start_second + 4)
    with pytest.raises(TooManyAttempts) as exc:
        service.submit_code("a@b.com", purpose, "000000")
    return exc.value


# ────────────────────────────────────────────────────────────
# request_code
# ────────────────────────────────────────────────────────────
def test_request_code_persists_and_sends(service, gateway, latest):
    result = service.request_code("a@b.com", SIGNUP)

    assert result.expires_in_seconds == 180
    assert result.to_dict() == {"message": result.message, "expires_in": 180}
    assert gateway.sent == [("a@b.com", "042017", SIGNUP)]

    record = latest()
    assert record.code == "042017"
    assert record.expires_at == T0 + timedelta(seconds=180)
    assert record.created_at == T0
    assert record.attempts == 0
    assert not record.verified and not record.blocked


def test_request_code_normalizes_email(service, gateway, latest):
    service.request_code("  A@B.com ", SIGNUP)

    assert gateway.sent[0][0] == "a@b.com"
    assert latest("a@b.com").code == "042017"


def test_request_code_accepts_purpose_names(service, latest):
    service.request_code("a@b.com", "PASSWORD_RESET")

    assert latest(purpose=RESET).code == "042017"


@pytest.mark.parametrize("email", ["", "   ", "not-an-email", "a@b", "a@@b.com"])
def test_request_code_rejects_invalid_email(service, gateway, email):
    with pytest.raises(InvalidEmail):
        service.request_code(email, SIGNUP)
    assert gateway.sent == []


def test_second_request_within_cooldown_is_refused(service, clock, gateway, latest, count_records):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=30)

    with pytest.raises(ResendTooSoon) as exc:
        service.request_code("a@b.com", SIGNUP)

    assert exc.value.seconds_remaining == 30
    assert count_records() == 1
    assert latest().code == "042017"
    assert len(gateway.sent) == 1


def test_request_after_cooldown_creates_new_record(service, clock, latest, count_records):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=60)

    service.request_code("a@b.com", SIGNUP)

    assert count_records() == 2
    assert latest().code == "550011"
    assert latest().created_at == T0 + timedelta(seconds=60)


def test_new_code_replaces_old_one_for_submission(service, clock):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=61)
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=62)

    with pytest.raises(CodeMismatch):
        service.submit_code("a@b.com", SIGNUP, "042017")
    assert service.submit_code("a@b.com", SIGNUP, "550011").message


def test_request_refused_while_blocked(service, clock, count_records):
    service.request_code("a@b.com", SIGNUP)
    blocked = block(service, clock)
    clock.at(minutes=10)

    with pytest.raises(TooManyAttempts) as exc:
        service.request_code("a@b.com", SIGNUP)

    assert exc.value.blocked_until == blocked.blocked_until
    assert count_records() == 1


def test_request_after_block_elapses_lifts_block_and_issues_code(service, clock, latest, count_records, session_factory):
    service.request_code("a@b.com", SIGNUP)
    blocked = block(service, clock)
    clock.now = blocked.blocked_until + timedelta(seconds=1)

    service.request_code("a@b.com", SIGNUP)

    assert count_records() == 2
    assert latest().code == "550011"
    from models import EmailVerification
    with session_factory() as db:
        first = db.query(EmailVerification).order_by(EmailVerification.id).first()
        assert first.blocked is False
        assert first.attempts == 0


def test_gateway_failure_rolls_back_record_by_default(service, gateway, clock, count_records):
    gateway.fail_with = NotificationError()

    with pytest.raises(NotificationError):
        service.request_code("a@b.com", SIGNUP)
    assert count_records() == 0

    # nothing was stored, so an immediate retry is not held back by the cooldown
    gateway.fail_with = None
    clock.at(seconds=1)
    service.request_code("a@b.com", SIGNUP)
    assert count_records() == 1


def test_gateway_failure_keeps_record_when_configured(session_factory, gateway, clock, count_records):
    service = EmailVerificationService(
        session_factory,
        gateway,
        settings=VerificationSettings(rollback_on_send_failure=False),
        clock=clock,
    )
    gateway.fail_with = NotificationError()

    with pytest.raises(NotificationError):
        service.request_code("a@b.com", SIGNUP)
    assert count_records() == 1

    clock.at(seconds=1)
    with pytest.raises(ResendTooSoon):
        service.request_code("a@b.com", SIGNUP)


def test_unexpected_gateway_exception_becomes_notification_error(service, gateway, count_records):
    gateway.fail_with = ConnectionResetError("peer reset")

    with pytest.raises(NotificationError) as exc:
        service.request_code("a@b.com", SIGNUP)

    assert isinstance(exc.value.__cause__, ConnectionResetError)
    assert count_records() == 0


# ────────────────────────────────────────────────────────────
# submit_code
# ────────────────────────────────────────────────────────────
def test_signup_scenario_mismatch_then_success(service, clock, latest):
    service.request_code("a@b.com", SIGNUP)
    assert latest().expires_at == T0 + timedelta(seconds=180)

    clock.at(seconds=10)
    with pytest.raises(CodeMismatch) as exc:
        service.submit_code("a@b.com", SIGNUP, "000000")
    assert exc.value.remaining_attempts == 4
    assert latest().attempts == 1

    clock.at(seconds=20)
    result = service.submit_code("a@b.com", SIGNUP, "042017")

    assert "completed" in result.message
    assert result.remaining_attempts is None
    record = latest()
    assert record.verified is True
    assert record.verified_at == T0 + timedelta(seconds=20)


def test_block_scenario(service, clock, latest):
    service.request_code("a@b.com", SIGNUP)

    blocked = block(service, clock)
    blocked_until = T0 + timedelta(seconds=5, minutes=30)
    assert blocked.blocked_until == blocked_until

    clock.now = blocked_until - timedelta(seconds=1)
    with pytest.raises(TooManyAttempts) as exc:
        service.submit_code("a@b.com", SIGNUP, "042017")
    assert exc.value.blocked_until == blocked_until

    clock.now = blocked_until + timedelta(seconds=1)
    assert "completed" in service.submit_code("a@b.com", SIGNUP, "042017").message
    record = latest()
    assert record.verified is True
    assert record.attempts == 0
    assert record.blocked is False


def test_sixth_attempt_with_correct_code_is_still_blocked(service, clock, latest):
    service.request_code("a@b.com", SIGNUP)
    block(service, clock)
    clock.at(seconds=6)

    with pytest.raises(TooManyAttempts):
        service.submit_code("a@b.com", SIGNUP, "042017")
    assert latest().attempts == 5
    assert latest().verified is False


def test_after_unblock_five_more_failures_needed_to_block_again(service, clock, latest):
    service.request_code("a@b.com", SIGNUP)
    blocked = block(service, clock)
    restart = blocked.blocked_until + timedelta(seconds=1)

    for i in range(4):
        clock.now = restart + timedelta(seconds=i)
        with pytest.raises(CodeMismatch) as exc:
            service.submit_code("a@b.com", SIGNUP, "000000")
        assert exc.value.remaining_attempts == 4 - i

    clock.now = restart + timedelta(seconds=4)
    with pytest.raises(TooManyAttempts) as exc:
        service.submit_code("a@b.com", SIGNUP, "000000")
    assert exc.value.blocked_until == restart + timedelta(seconds=4, minutes=30)
    assert latest().attempts == 5


def test_expired_code_reports_expired_even_when_correct(service, clock, latest):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=181)

    with pytest.raises(CodeExpired):
        service.submit_code("a@b.com", SIGNUP, "042017")
    with pytest.raises(CodeExpired):
        service.submit_code("a@b.com", SIGNUP, "000000")

    assert latest().attempts == 0
    assert latest().verified is False


def test_code_accepted_at_exact_expiry(service, clock):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=180)

    assert service.submit_code("a@b.com", SIGNUP, "042017").message


def test_resubmitting_correct_code_is_idempotent(service, clock, latest):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=5)
    first = service.submit_code("a@b.com", SIGNUP, "042017")
    clock.at(seconds=6)
    second = service.submit_code("a@b.com", SIGNUP, "042017")

    assert "completed" in first.message
    assert second.message == ALREADY_VERIFIED_MESSAGE
    assert latest().attempts == 0


def test_submit_without_request_fails(service):
    with pytest.raises(NoSuchVerification):
        service.submit_code("a@b.com", SIGNUP, "123456")


@pytest.mark.parametrize("code", ["", "12345", "12a456", "1234567", None])
def test_malformed_code_consumes_no_attempt(service, clock, latest, code):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=3)

    with pytest.raises(InvalidCodeFormat):
        service.submit_code("a@b.com", SIGNUP, code)
    assert latest().attempts == 0


def test_surrounding_whitespace_in_code_is_ignored(service, clock):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=3)

    assert service.submit_code("a@b.com", SIGNUP, " 042017 ").message


# ────────────────────────────────────────────────────────────
# purpose isolation / is_verified
# ────────────────────────────────────────────────────────────
def test_signup_block_does_not_affect_password_reset(service, clock, latest):
    service.request_code("a@b.com", SIGNUP)
    block(service, clock)

    clock.at(seconds=10)
    service.request_code("a@b.com", RESET)
    clock.at(seconds=11)
    result = service.submit_code("a@b.com", RESET, "550011")

    assert result.message
    assert latest(purpose=RESET).verified is True
    assert latest(purpose=SIGNUP).blocked is True


def test_cooldown_is_per_purpose(service, clock, count_records):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=1)

    service.request_code("a@b.com", RESET)

    assert count_records(purpose=SIGNUP) == 1
    assert count_records(purpose=RESET) == 1


def test_code_from_another_purpose_is_rejected(service, clock):
    service.request_code("a@b.com", SIGNUP)
    clock.at(seconds=1)
    service.request_code("a@b.com", RESET)
    clock.at(seconds=2)

    with pytest.raises(CodeMismatch):
        service.submit_code("a@b.com", RESET, "042017")


def test_is_verified(service, clock):
    assert service.is_verified("a@b.com", SIGNUP) is False

    service.request_code("a@b.com", SIGNUP)
    assert service.is_verified("a@b.com", SIGNUP) is False

    clock.at(seconds=5)
    service.submit_code("a@b.com", SIGNUP, "042017")

    assert service.is_verified("A@B.COM", SIGNUP) is True
    assert service.is_verified("a@b.com", RESET) is False


# ────────────────────────────────────────────────────────────
# storage faults
# ────────────────────────────────────────────────────────────
def test_storage_failure_surfaces_as_storage_error(gateway, clock):
    db = MagicMock()
    db.__enter__.return_value = db
    db.get_bind.return_value.dialect.name = "sqlite"
    db.execute.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    service = EmailVerificationService(lambda: db, gateway, clock=clock)

    with pytest.raises(StorageError) as exc:
        service.submit_code("a@b.com", SIGNUP, "123456")

    assert isinstance(exc.value.__cause__, OperationalError)
    assert gateway.sent == []


# ────────────────────────────────────────────────────────────
# serialization per (email, purpose)
# ────────────────────────────────────────────────────────────
@pytest.fixture
def store_calls():
    """Record lock/find_latest calls made through VerificationRecordStore, in order."""
    calls = []
    real_lock = VerificationRecordStore.lock
    real_find_latest = VerificationRecordStore.find_latest

    def lock(self, email, purpose):
        calls.append(("lock", email, purpose))
        return real_lock(self, email, purpose)

    def find_latest(self, email, purpose, for_update=False):
        calls.append(("find_latest", email, purpose, for_update))
        return real_find_latest(self, email, purpose, for_update=for_update)

    with patch.object(VerificationRecordStore, "lock", lock), \
            patch.object(VerificationRecordStore, "find_latest", find_latest):
        yield calls


def test_request_locks_key_before_reading_latest_for_update(service, store_calls):
    service.request_code("A@b.com", SIGNUP)

    assert store_calls[:2] == [
        ("lock", "a@b.com", SIGNUP),
        ("find_latest", "a@b.com", SIGNUP, True),
    ]


def test_submit_locks_key_before_reading_latest_for_update(service, clock, store_calls):
    service.request_code("a@b.com", RESET)
    del store_calls[:]
    clock.at(seconds=5)

    service.submit_code("a@b.com", RESET, "042017")

    assert store_calls == [
        ("lock", "a@b.com", RESET),
        ("find_latest", "a@b.com", RESET, True),
    ]


def test_clock_is_read_after_lock_is_acquired(service, clock, latest):
    service.request_code("a@b.com", SIGNUP)
    real_lock = VerificationRecordStore.lock

    def slow_lock(self, email, purpose):
        # another holder kept the lock for 61 seconds
        clock.at(seconds=61)
        return real_lock(self, email, purpose)

    with patch.object(VerificationRecordStore, "lock", slow_lock):
        service.request_code("a@b.com", SIGNUP)

    assert latest().code == "550011"
    assert latest().created_at == T0 + timedelta(seconds=61)
