from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from otp_service.database import Base


class OtpEntry(Base):
    __tablename__ = "otp_verifications"

    id = Column(Integer, primary_key=True)
    identity = Column(String(255), nullable=False)
    purpose = Column(String(32), nullable=False)
    code = Column(String(10), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_otp_identity_purpose_created", "identity", "purpose", "created_at"),
        Index("ix_otp_expires_at", "expires_at"),
    )
