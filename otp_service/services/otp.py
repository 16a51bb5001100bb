from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import logging
import math
import secrets

from otp_service.config import Settings, settings
from otp_service.models.repository import OtpRepository, OtpStoreError, otp_repository
from otp_service.schemas.email import EmailSendError
from otp_service.services.clock import SystemClock, as_utc, system_clock
from otp_service.services.email import EmailDispatcher, build_dispatcher

LOGGER = logging.getLogger(__name__)

MSG_SENT = "OTP sent successfully to your email address."
MSG_ISSUE_STORAGE_FAILED = "Failed to generate OTP. Please try again."
MSG_DELIVERY_FAILED = "Failed to send OTP email. Please try again."
MSG_INVALID_OR_EXPIRED = "Invalid or expired OTP code."
MSG_ATTEMPTS_EXCEEDED = (
    "Maximum verification attempts exceeded. Please request a new OTP."
)
MSG_VERIFY_STORAGE_FAILED = "Failed to verify OTP. Please try again."
MSG_VERIFIED = "OTP verified successfully."

PURPOSE_LABELS = {
    "password_reset": "Password Reset",
    "email_verification": "Email Verification",
}


class OtpFailure(str, Enum):
    STORAGE_ERROR = "storage_error"
    DELIVERY_ERROR = "delivery_error"
    INVALID_OR_EXPIRED = "invalid_or_expired"
    INVALID_CODE = "invalid_code"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"


@dataclass(frozen=True)
class IssueResult:
    accepted: bool
    message: str
    reason: OtpFailure | None = None
    otp_id: int | None = None
    code: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class VerifyResult:
    success: bool
    message: str
    reason: OtpFailure | None = None
    otp_id: int | None = None


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    wait_seconds: int = 0


def normalize_identity(identity: str) -> str:
    cleaned = (identity or "").strip().lower()
    if not cleaned:
        raise ValueError("Email address is required")
    return cleaned


def purpose_label(purpose: str) -> str:
    return PURPOSE_LABELS.get(purpose, purpose.replace("_", " ").title())


def mask_identity(identity: str) -> str:
    local, _, domain = identity.partition("@")
    return f"{local[:2]}***@{domain}" if domain else f"{identity[:2]}***"


def _minutes_label(seconds: int) -> str:
    minutes = max(1, seconds // 60)
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


class OtpService:
    """Issues, verifies, throttles and purges email one-time passcodes.

    All coordination goes through the repository; the service holds no
    mutable state of its own, so one instance is shared by every request.
    """

    def __init__(
        self,
        repository: OtpRepository,
        dispatcher: EmailDispatcher,
        clock: SystemClock = system_clock,
        config: Settings = settings,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._clock = clock
        self._config = config

    def issue(self, identity: str, purpose: str) -> IssueResult:
        normalized = normalize_identity(identity)
        now = self._clock.now()
        code = self._generate_code()
        expires_at = now + timedelta(seconds=self._config.otp_ttl_seconds)

        try:
            entry = self._repository.insert(
                identity=normalized,
                purpose=purpose,
                code=code,
                created_at=now,
                expires_at=expires_at,
                attempts=0,
                max_attempts=self._config.otp_max_attempts,
                verified=False,
                verified_at=None,
            )
        except OtpStoreError:
            LOGGER.exception("Storing OTP failed for %s", mask_identity(normalized))
            return IssueResult(
                accepted=False,
                message=MSG_ISSUE_STORAGE_FAILED,
                reason=OtpFailure.STORAGE_ERROR,
            )

        params = {
            "to_email": normalized,
            "user_email": normalized,
            "otp_code": code,
            "expires_in": _minutes_label(self._config.otp_ttl_seconds),
            "purpose": purpose_label(purpose),
        }
        try:
            self._dispatcher.send(self._config.template_for(purpose), params)
        except EmailSendError as exc:
            LOGGER.error(
                "OTP email to %s failed: %s", mask_identity(normalized), exc
            )
            self._rollback(entry.id)
            return IssueResult(
                accepted=False,
                message=MSG_DELIVERY_FAILED,
                reason=OtpFailure.DELIVERY_ERROR,
            )
        except Exception:
            # The row must not outlive a send that never completed.
            LOGGER.exception(
                "Unexpected error sending OTP email to %s", mask_identity(normalized)
            )
            self._rollback(entry.id)
            return IssueResult(
                accepted=False,
                message=MSG_DELIVERY_FAILED,
                reason=OtpFailure.DELIVERY_ERROR,
            )

        LOGGER.info(
            "OTP issued id=%s for %s purpose=%s", entry.id, mask_identity(normalized), purpose
        )
        return IssueResult(
            accepted=True,
            message=MSG_SENT,
            otp_id=entry.id,
            code=code,
            expires_at=expires_at,
        )

    def verify(self, identity: str, code: str, purpose: str) -> VerifyResult:
        normalized = normalize_identity(identity)
        submitted = (code or "").strip()
        now = self._clock.now()

        try:
            entry = self._repository.query_latest(normalized, purpose, now)
        except OtpStoreError:
            LOGGER.exception("OTP lookup failed for %s", mask_identity(normalized))
            return VerifyResult(
                success=False,
                message=MSG_VERIFY_STORAGE_FAILED,
                reason=OtpFailure.STORAGE_ERROR,
            )
        if entry is None:
            return VerifyResult(
                success=False,
                message=MSG_INVALID_OR_EXPIRED,
                reason=OtpFailure.INVALID_OR_EXPIRED,
            )

        if entry.attempts >= entry.max_attempts:
            return VerifyResult(
                success=False,
                message=MSG_ATTEMPTS_EXCEEDED,
                reason=OtpFailure.ATTEMPTS_EXCEEDED,
            )

        new_attempts = entry.attempts + 1
        matched = secrets.compare_digest(
            entry.code.encode("utf-8"), submitted.encode("utf-8")
        )
        values = {"attempts": new_attempts}
        if matched:
            values.update(verified=True, verified_at=now)

        # Compare-and-set on the attempts value we read.
        try:
            updated = self._repository.update(
                entry.id, values, attempts=entry.attempts, verified=False
            )
        except OtpStoreError:
            LOGGER.exception("OTP update failed id=%s", entry.id)
            return VerifyResult(
                success=False,
                message=MSG_VERIFY_STORAGE_FAILED,
                reason=OtpFailure.STORAGE_ERROR,
            )
        if not updated:
            LOGGER.warning("OTP id=%s changed concurrently", entry.id)
            return VerifyResult(
                success=False,
                message=MSG_INVALID_OR_EXPIRED,
                reason=OtpFailure.INVALID_OR_EXPIRED,
            )

        if matched:
            LOGGER.info("OTP verified id=%s", entry.id)
            return VerifyResult(success=True, message=MSG_VERIFIED, otp_id=entry.id)

        remaining = entry.max_attempts - new_attempts
        if remaining > 0:
            noun = "attempt" if remaining == 1 else "attempts"
            return VerifyResult(
                success=False,
                message=f"Invalid OTP code. {remaining} {noun} remaining.",
                reason=OtpFailure.INVALID_CODE,
            )
        LOGGER.warning("OTP id=%s exhausted its attempts", entry.id)
        return VerifyResult(
            success=False,
            message=MSG_ATTEMPTS_EXCEEDED,
            reason=OtpFailure.ATTEMPTS_EXCEEDED,
        )

    def can_issue(self, identity: str, purpose: str) -> RateLimitResult:
        normalized = normalize_identity(identity)
        window = self._config.otp_resend_window_seconds
        now = self._clock.now()
        try:
            recent = self._repository.query_range(
                normalized, purpose, after=now - timedelta(seconds=window), limit=1
            )
        except OtpStoreError:
            # Fail open when history cannot be read.
            LOGGER.warning(
                "OTP rate limit check failed for %s; allowing request",
                mask_identity(normalized),
                exc_info=True,
            )
            return RateLimitResult(allowed=True)

        if not recent:
            return RateLimitResult(allowed=True)

        elapsed = (now - as_utc(recent[0].created_at)).total_seconds()
        wait_seconds = math.ceil(window - elapsed)
        return RateLimitResult(
            allowed=False, wait_seconds=min(max(wait_seconds, 0), window)
        )

    def cleanup(self, identity: str) -> None:
        try:
            normalized = normalize_identity(identity)
        except ValueError:
            LOGGER.warning("OTP cleanup skipped: no email address given")
            return
        try:
            removed = self._purge(identity=normalized)
        except OtpStoreError:
            LOGGER.warning(
                "OTP cleanup failed for %s", mask_identity(normalized), exc_info=True
            )
            return
        LOGGER.debug("Removed %s stale OTP(s) for %s", removed, mask_identity(normalized))

    def cleanup_all(self) -> int:
        try:
            removed = self._purge()
        except OtpStoreError:
            LOGGER.warning("OTP cleanup failed", exc_info=True)
            return 0
        LOGGER.info("Removed %s stale OTP(s)", removed)
        return removed

    def _purge(self, identity: str | None = None) -> int:
        now = self._clock.now()
        retention = timedelta(seconds=self._config.otp_verified_retention_seconds)
        return self._repository.delete_stale(
            now, verified_before=now - retention, identity=identity
        )

    def _rollback(self, record_id: int) -> None:
        try:
            self._repository.delete(record_id)
        except OtpStoreError:
            LOGGER.exception("Rolling back undelivered OTP id=%s failed", record_id)

    def _generate_code(self) -> str:
        length = self._config.otp_length
        value = secrets.randbelow(10**length)
        return str(value).zfill(length)


otp_service = OtpService(otp_repository, build_dispatcher())
