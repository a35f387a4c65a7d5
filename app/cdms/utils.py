from __future__ import annotations

from datetime import date, datetime
from typing import Any

from flask import g, request

from app.cdms.errors import ValidationError
from app.cdms.models import User


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # require_permission / login_required run first; this only guards misuse.
        raise RuntimeError("No current user")
    return u


def json_payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in ("1", "true", "yes", "on")


def parse_deadline(value: Any, *, field: str = "deadline") -> datetime | None:
    """ISO date or datetime string (or a date/datetime) -> naive datetime; blank -> None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid deadline: {value!r}", field=field)
