import dataclasses
from datetime import timedelta
from http.client import RemoteDisconnected
import secrets

import pytest

from conftest import START, stored_entries
from otp_service.config import settings
from otp_service.models.repository import OtpStoreError
from otp_service.services import email
from otp_service.services.email import EmailJsDispatcher
from otp_service.services.otp import (
    MSG_DELIVERY_FAILED,
    MSG_SENT,
    OtpFailure,
    OtpService,
)


def test_issue_stores_record_and_sends_email(service, dispatcher):
    result = service.issue("  User@Example.COM ", "password_reset")

    assert result.accepted is True
    assert result.message == MSG_SENT
    assert result.expires_at == START + timedelta(minutes=10)

    [entry] = stored_entries()
    assert entry.id == result.otp_id
    assert entry.identity == "user@example.com"
    assert entry.purpose == "password_reset"
    assert entry.code == result.code
    assert entry.attempts == 0
    assert entry.max_attempts == 5
    assert entry.verified is False
    assert entry.verified_at is None

    _, params = dispatcher.sent[-1]
    assert params == {
        "to_email": "user@example.com",
        "user_email": "user@example.com",
        "otp_code": result.code,
        "expires_in": "10 minutes",
        "purpose": "Password Reset",
    }


def test_issue_labels_email_verification(service, dispatcher):
    service.issue("user@example.com", "email_verification")

    assert dispatcher.sent[-1][1]["purpose"] == "Email Verification"


def test_codes_are_six_digits(service, dispatcher):
    for _ in range(25):
        service.issue("user@example.com", "password_reset")

    codes = [params["otp_code"] for _, params in dispatcher.sent]
    assert all(len(code) == 6 and code.isdigit() for code in codes)


def test_code_keeps_leading_zeros(service, dispatcher, monkeypatch):
    monkeypatch.setattr(secrets, "randbelow", lambda n: 4321)

    result = service.issue("user@example.com", "password_reset")

    assert result.code == "004321"
    assert stored_entries()[0].code == "004321"


def test_history_is_kept_across_issues(service, clock):
    service.issue("user@example.com", "password_reset")
    clock.advance(61)
    service.issue("user@example.com", "password_reset")

    assert len(stored_entries("user@example.com")) == 2


def test_dispatch_failure_rolls_back_record(service, dispatcher):
    dispatcher.fail = True

    result = service.issue("user@example.com", "password_reset")

    assert result.accepted is False
    assert result.reason is OtpFailure.DELIVERY_ERROR
    assert result.message == MSG_DELIVERY_FAILED
    assert stored_entries() == []

    code = dispatcher.last_code
    verification = service.verify("user@example.com", code, "password_reset")
    assert verification.success is False
    assert verification.reason is OtpFailure.INVALID_OR_EXPIRED


def test_dropped_email_connection_rolls_back_record(repository, clock, monkeypatch):
    config = dataclasses.replace(
        settings,
        emailjs_service_id="service_1",
        emailjs_public_key="public_1",
        otp_template_id="template_otp",
    )
    service = OtpService(repository, EmailJsDispatcher(config), clock, config)

    def dropped_connection(request, timeout=None):
        raise RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(email, "urlopen", dropped_connection)

    result = service.issue("user@example.com", "password_reset")

    assert result.accepted is False
    assert result.reason is OtpFailure.DELIVERY_ERROR
    assert stored_entries() == []


def test_unexpected_dispatch_error_rolls_back_record(service, dispatcher, monkeypatch):
    def broken_send(template_id, params):
        raise RuntimeError("template renderer crashed")

    monkeypatch.setattr(dispatcher, "send", broken_send)

    result = service.issue("user@example.com", "password_reset")

    assert result.accepted is False
    assert result.reason is OtpFailure.DELIVERY_ERROR
    assert result.message == MSG_DELIVERY_FAILED
    assert stored_entries() == []


def test_insert_failure_skips_dispatch(service, repository, dispatcher, monkeypatch):
    def broken_insert(**fields):
        raise OtpStoreError("database is down")

    monkeypatch.setattr(repository, "insert", broken_insert)

    result = service.issue("user@example.com", "password_reset")

    assert result.accepted is False
    assert result.reason is OtpFailure.STORAGE_ERROR
    assert dispatcher.sent == []


def test_failed_rollback_still_reports_delivery_error(
    service, repository, dispatcher, monkeypatch
):
    dispatcher.fail = True

    def broken_delete(record_id):
        raise OtpStoreError("database is down")

    monkeypatch.setattr(repository, "delete", broken_delete)

    result = service.issue("user@example.com", "password_reset")

    assert result.reason is OtpFailure.DELIVERY_ERROR


def test_issue_rejects_blank_identity(service):
    with pytest.raises(ValueError, match="required"):
        service.issue("   ", "password_reset")
