from datetime import timedelta

import pytest

from conftest import stored_entries
from otp_service.models.repository import OtpStoreError

EMAIL = "user@x.com"


@pytest.fixture()
def make_entry(repository, clock):
    def _make(code: str, identity: str = EMAIL, **overrides):
        now = clock.now()
        fields = dict(
            identity=identity,
            purpose="password_reset",
            code=code,
            created_at=now,
            expires_at=now + timedelta(minutes=10),
            attempts=0,
            max_attempts=5,
            verified=False,
            verified_at=None,
        )
        fields.update(overrides)
        return repository.insert(**fields)

    return _make


def _codes(identity=None):
    return sorted(entry.code for entry in stored_entries(identity))


def test_cleanup_removes_expired_and_old_verified(service, clock, make_entry):
    now = clock.now()
    make_entry("000001", expires_at=now - timedelta(seconds=1))
    make_entry("000002", verified=True, verified_at=now - timedelta(hours=2))
    make_entry("000003", verified=True, verified_at=now - timedelta(minutes=30))
    make_entry("000004")
    make_entry("000005", identity="other@x.com", expires_at=now - timedelta(minutes=1))

    service.cleanup(" USER@x.com ")

    assert _codes(EMAIL) == ["000003", "000004"]
    assert _codes("other@x.com") == ["000005"]


def test_cleanup_all_covers_every_identity(service, clock, make_entry):
    now = clock.now()
    make_entry("000001", expires_at=now - timedelta(seconds=1))
    make_entry("000002", identity="other@x.com", expires_at=now - timedelta(minutes=1))
    make_entry("000003")

    removed = service.cleanup_all()

    assert removed == 2
    assert _codes() == ["000003"]


def test_verified_code_kept_for_an_hour(service, clock):
    result = service.issue(EMAIL, "password_reset")
    service.verify(EMAIL, result.code, "password_reset")

    clock.advance(5 * 60)
    service.cleanup(EMAIL)
    assert len(stored_entries()) == 1

    clock.advance(60 * 60)
    service.cleanup(EMAIL)
    assert stored_entries() == []


def test_cleanup_failure_is_swallowed(service, repository, monkeypatch):
    def broken_purge(*args, **kwargs):
        raise OtpStoreError("database is down")

    monkeypatch.setattr(repository, "delete_stale", broken_purge)

    assert service.cleanup(EMAIL) is None
    assert service.cleanup_all() == 0


def test_cleanup_ignores_blank_identity(service, make_entry):
    make_entry("111111")

    assert service.cleanup("   ") is None
    assert service.cleanup("") is None
    assert len(stored_entries()) == 1
