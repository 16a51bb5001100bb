import os
from datetime import datetime, timedelta, timezone

# Test-safe environment defaults, applied before the package reads settings.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EMAIL_BACKEND", "emailjs")
os.environ.setdefault("OTP_DEBUG", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from otp_service.database import Base, engine, session_scope
from otp_service.main import app
from otp_service.models.otp import OtpEntry
from otp_service.models.repository import OtpRepository
from otp_service.routers.auth import get_otp_service
from otp_service.schemas.email import EmailSendError
from otp_service.services.otp import OtpService

START = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.fail = False

    def send(self, template_id: str, params: dict) -> None:
        self.sent.append((template_id, dict(params)))
        if self.fail:
            raise EmailSendError("EmailJS rejected the request")

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]["otp_code"]


def stored_entries(identity: str | None = None) -> list[OtpEntry]:
    stmt = select(OtpEntry).order_by(OtpEntry.id)
    if identity is not None:
        stmt = stmt.where(OtpEntry.identity == identity)
    with session_scope() as session:
        return list(session.execute(stmt).scalars().all())


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def repository():
    return OtpRepository()


@pytest.fixture()
def service(repository, dispatcher, clock):
    return OtpService(repository, dispatcher, clock)


@pytest.fixture()
def client(service):
    app.dependency_overrides[get_otp_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
