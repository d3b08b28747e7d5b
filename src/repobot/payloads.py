from __future__ import annotations

from datetime import datetime, timezone
from typing import cast


class PayloadError(ValueError):
    """A GitHub payload did not have the shape we rely on."""


def as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def require_object(value: object, *, field: str) -> dict[str, object]:
    obj = as_object_dict(value)
    if obj is None:
        raise PayloadError(f"Expected object for {field}")
    return obj


def as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise PayloadError(f"Unexpected type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise PayloadError(f"Unexpected value for {field}: {value}") from exc
    raise PayloadError(f"Unexpected type for {field}")


def as_optional_int(value: object, *, field: str) -> int | None:
    if value is None:
        return None
    return as_int(value, field=field)


def as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def parse_timestamp(value: object, *, field: str) -> datetime:
    """Parse GitHub's ISO-8601 timestamps (``2021-08-30T10:00:00Z``) as aware UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise PayloadError(f"Unexpected timestamp for {field}: {value}") from exc
    else:
        raise PayloadError(f"Missing timestamp for {field}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
