from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

OtpPurpose = Literal["password_reset", "email_verification"]


class _EmailPayload(BaseModel):
    email: str = Field(min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if "@" not in cleaned:
            raise ValueError("A valid email address is required")
        return cleaned


class OtpRequest(_EmailPayload):
    purpose: OtpPurpose = "password_reset"


class OtpResponse(BaseModel):
    message: str
    expires_in_seconds: int
    otp: Optional[str] = None


class OtpVerifyRequest(_EmailPayload):
    purpose: OtpPurpose = "password_reset"
    code: str = Field(min_length=1, max_length=32)


class OtpVerifyResponse(BaseModel):
    message: str
    verified: bool


class OtpStatusResponse(BaseModel):
    allowed: bool
    wait_seconds: int = 0


class OtpCleanupRequest(_EmailPayload):
    pass


class MessageResponse(BaseModel):
    message: str
