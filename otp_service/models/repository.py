from datetime import datetime

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from otp_service.database import session_scope
from otp_service.models.otp import OtpEntry


class OtpStoreError(RuntimeError):
    pass


def _conditions(filters: dict) -> list:
    conditions = []
    for field, value in filters.items():
        if not hasattr(OtpEntry, field):
            raise ValueError(f"{OtpEntry.__name__} has no column '{field}'")
        column = getattr(OtpEntry, field)
        if value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == value)
    return conditions


class OtpRepository:
    """SQLAlchemy-backed store for OTP records.

    Every method runs in its own transaction and wraps driver failures in
    ``OtpStoreError`` so callers only deal with one storage error type.
    """

    def insert(self, **fields) -> OtpEntry:
        entry = OtpEntry(**fields)
        try:
            with session_scope() as session:
                session.add(entry)
                session.flush()
        except SQLAlchemyError as exc:
            raise OtpStoreError("Failed to store OTP record") from exc
        return entry

    def query_latest(
        self, identity: str, purpose: str, now: datetime
    ) -> OtpEntry | None:
        """Return the newest unverified, unexpired record for the pair."""
        stmt = (
            select(OtpEntry)
            .where(
                OtpEntry.identity == identity,
                OtpEntry.purpose == purpose,
                OtpEntry.verified.is_(False),
                OtpEntry.expires_at > now,
            )
            .order_by(OtpEntry.created_at.desc(), OtpEntry.id.desc())
            .limit(1)
        )
        try:
            with session_scope() as session:
                return session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise OtpStoreError("Failed to look up OTP record") from exc

    def query_range(
        self, identity: str, purpose: str, after: datetime, limit: int = 1
    ) -> list[OtpEntry]:
        stmt = (
            select(OtpEntry)
            .where(
                OtpEntry.identity == identity,
                OtpEntry.purpose == purpose,
                OtpEntry.created_at > after,
            )
            .order_by(OtpEntry.created_at.desc(), OtpEntry.id.desc())
            .limit(limit)
        )
        try:
            with session_scope() as session:
                return list(session.execute(stmt).scalars().all())
        except SQLAlchemyError as exc:
            raise OtpStoreError("Failed to query recent OTP records") from exc

    def update(self, record_id: int, values: dict, **guards) -> int:
        """Apply ``values`` to one record in a single UPDATE.

        ``guards`` are extra column equality conditions; the row is only
        touched when they still hold. Returns the number of rows changed.
        """
        conditions = [OtpEntry.id == record_id, *_conditions(guards)]
        try:
            with session_scope() as session:
                result = session.execute(
                    update(OtpEntry).where(*conditions).values(**values)
                )
                return result.rowcount
        except SQLAlchemyError as exc:
            raise OtpStoreError("Failed to update OTP record") from exc

    def delete(self, record_id: int) -> int:
        try:
            with session_scope() as session:
                result = session.execute(
                    delete(OtpEntry).where(OtpEntry.id == record_id)
                )
                return result.rowcount
        except SQLAlchemyError as exc:
            raise OtpStoreError("Failed to delete OTP record") from exc

    def delete_stale(
        self,
        now: datetime,
        verified_before: datetime,
        identity: str | None = None,
    ) -> int:
        stale = or_(
            OtpEntry.expires_at < now,
            and_(
                OtpEntry.verified.is_(True),
                OtpEntry.verified_at < verified_before,
            ),
        )
        stmt = delete(OtpEntry).where(stale)
        if identity is not None:
            stmt = stmt.where(OtpEntry.identity == identity)
        try:
            with session_scope() as session:
                result = session.execute(stmt)
                return result.rowcount
        except SQLAlchemyError as exc:
            raise OtpStoreError("Failed to purge OTP records") from exc


otp_repository = OtpRepository()
