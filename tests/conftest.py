from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, VerificationPurpose
from services.code_generator import CodeGenerator
from services.email_verification_service import EmailVerificationService
from services.notification_gateway import NotificationGateway
from services.verification_settings import VerificationSettings
from services.verification_store import VerificationRecordStore

T0 = datetime(2025, 3, 14, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def at(self, **offset) -> None:
        """Move to T0 + offset."""
        self.now = T0 + timedelta(**offset)


class RecordingGateway(NotificationGateway):
    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send(self, to, code, purpose):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((to, code, purpose))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


class ScriptedGenerator(CodeGenerator):
    """Hands out predetermined codes, then falls back to random ones."""

    def __init__(self, *codes):
        super().__init__(6)
        self.codes = list(codes)

    def generate(self) -> str:
        if self.codes:
            return self.codes.pop(0)
        return super().generate()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def settings():
    return VerificationSettings()


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def service(session_factory, gateway, settings, generator, clock):
    return EmailVerificationService(
        session_factory, gateway, settings=settings, generator=generator, clock=clock
    )


@pytest.fixture
def latest(session_factory):
    """Read the latest record for (email, purpose) in a fresh session."""
    def _latest(email="a@b.com", purpose=VerificationPurpose.SIGNUP):
        with session_factory() as db:
            record = VerificationRecordStore(db).find_latest(email, purpose)
            if record is not None:
                db.expunge(record)
            return record
    return _latest


@pytest.fixture
def count_records(session_factory):
    def _count(email="a@b.com", purpose=VerificationPurpose.SIGNUP):
        from models import EmailVerification
        with session_factory() as db:
            return (
                db.query(EmailVerification)
                .filter(EmailVerification.email == email, EmailVerification.purpose == purpose)
                .count()
            )
    return _count
