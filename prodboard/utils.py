import uuid
from datetime import datetime, timezone


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(value, upper))
