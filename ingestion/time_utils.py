from __future__ import annotations

from datetime import datetime


def _local_tz():
    return datetime.now().astimezone().tzinfo


# event times keep the wall-clock offset the user spoke in; "2pm" stays hour 14
def parse_event_time(value: str | None) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("event_time is required")
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_local_tz())
    return parsed


def now_iso() -> str:
    return datetime.now(tz=_local_tz()).isoformat()
