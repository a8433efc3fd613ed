# single gate for the acting user id before any store access
# callers pass the id they were handed explicitly; nothing is read from ambient state

from __future__ import annotations

import re

from ingestion.errors import InvalidIdentity

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.I,
)


def validate_user_id(user_id: object, context: str = "operation") -> str:
    # type check precedes format check so 0/False/NaN never reach the regex
    if user_id is None:
        raise InvalidIdentity(f"user id is required for {context} but got: None", context=context)
    if not isinstance(user_id, str):
        raise InvalidIdentity(
            f"user id must be a string for {context} but got type: {type(user_id).__name__}",
            context=context,
        )
    value = user_id.strip()
    if not value:
        raise InvalidIdentity(f"user id is required for {context} but got an empty string", context=context)
    if not _UUID_RE.match(value):
        raise InvalidIdentity(f"user id has invalid format for {context}: {user_id!r}", context=context)
    return value.lower()
