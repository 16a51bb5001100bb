from datetime import datetime, timezone


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = SystemClock()
