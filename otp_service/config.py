import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv(override=False)


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw_value = os.getenv(name, default)
    return tuple(item.strip() for item in raw_value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./otp.db")
    database_connect_timeout_seconds: int = int(
        os.getenv("DATABASE_CONNECT_TIMEOUT_SECONDS", "10")
    )
    database_statement_timeout_ms: int = int(
        os.getenv("DATABASE_STATEMENT_TIMEOUT_MS", "5000")
    )
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    cors_origins: tuple[str, ...] = field(
        default_factory=lambda: _env_list(
            "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        )
    )
    otp_length: int = int(os.getenv("OTP_LENGTH", "6"))
    otp_ttl_seconds: int = int(os.getenv("OTP_TTL_SECONDS", "600"))
    otp_max_attempts: int = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
    otp_resend_window_seconds: int = int(os.getenv("OTP_RESEND_WINDOW_SECONDS", "60"))
    otp_verified_retention_seconds: int = int(
        os.getenv("OTP_VERIFIED_RETENTION_SECONDS", "3600")
    )
    otp_debug: bool = _env_bool("OTP_DEBUG", False)
    email_backend: str = os.getenv("EMAIL_BACKEND", "emailjs").strip().lower()
    email_timeout_seconds: float = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10"))
    emailjs_service_id: str = os.getenv("EMAILJS_SERVICE_ID", "")
    emailjs_public_key: str = os.getenv("EMAILJS_PUBLIC_KEY", "")
    emailjs_private_key: str = os.getenv("EMAILJS_PRIVATE_KEY", "")
    otp_template_id: str = os.getenv(
        "OTP_TEMPLATE_ID", os.getenv("EMAILJS_PASSWORD_RESET_TEMPLATE_ID", "")
    )
    otp_template_password_reset: str = os.getenv("OTP_TEMPLATE_PASSWORD_RESET", "")
    otp_template_email_verification: str = os.getenv(
        "OTP_TEMPLATE_EMAIL_VERIFICATION", ""
    )
    otp_email_sender: str = (
        os.getenv("OTP_EMAIL_SENDER")
        or os.getenv("GMAIL_SENDER")
        or os.getenv("FROM_EMAIL", "")
    )
    otp_email_subject: str = os.getenv("OTP_EMAIL_SUBJECT", "Your verification code")
    gmail_client_id: str = os.getenv("GMAIL_CLIENT_ID", "")
    gmail_client_secret: str = os.getenv("GMAIL_CLIENT_SECRET", "")
    gmail_refresh_token: str = os.getenv("GMAIL_REFRESH_TOKEN", "")

    def template_for(self, purpose: str) -> str:
        by_purpose = {
            "password_reset": self.otp_template_password_reset,
            "email_verification": self.otp_template_email_verification,
        }
        return by_purpose.get(purpose) or self.otp_template_id


settings = Settings()
