"""UTC helpers; SQLite hands back naive datetimes that are UTC by convention"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_github_timestamp(value: str | datetime | None) -> datetime | None:
    """Remote timestamps arrive as ISO 8601 strings with a Z suffix"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
