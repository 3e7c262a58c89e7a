"""Raw event to InboundEvent normalization (core domain).

Platform receivers hand over loosely typed values; everything past this
module works with the frozen InboundEvent and its narrowed extras.
"""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from core.models import ExtraValue, InboundEvent, SourceType

INVALID_SMS_REASON = "invalid message: empty body or sender"
INVALID_NOTIFICATION_REASON = "invalid message: empty notification content"
INVALID_TIMESTAMP_REASON = "invalid message: unreadable timestamp"

Timestamp = Union[datetime, int, float, str]


class InvalidEventError(ValueError):
    """Raised when a raw event lacks the fields needed for matching.

    The partially populated event is kept so the rejection can still be
    written to history.
    """

    def __init__(self, event: InboundEvent, reason: str) -> None:
        super().__init__(reason)
        self.event = event
        self.reason = reason


def coerce_timestamp(value: Timestamp) -> datetime:
    """Return an aware datetime from a datetime, epoch milliseconds or ISO text.

    Raises ValueError or TypeError when the value cannot be read as a time.
    """

    if isinstance(value, str):
        text = value.strip()
        value = int(text) if text.lstrip("-").isdigit() else datetime.fromisoformat(text)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"Unsupported timestamp: {value!r}")
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _read_timestamp(value: Any) -> Optional[datetime]:
    try:
        return coerce_timestamp(value)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _as_text(value: Any) -> Optional[str]:
    # Receivers may hand over numbers (a JSON phone number, a numeric code).
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _narrow_extra(value: Any) -> Optional[ExtraValue]:
    # bool is a subclass of int, so it must be checked first.
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return json.dumps(value, default=str, sort_keys=True)
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return tuple(str(item) for item in items if item is not None)
    return str(value)


def normalize_extras(raw: Optional[Mapping[str, Any]]) -> dict[str, ExtraValue]:
    """Narrow arbitrary notification extras to str, number, bool or string list.

    None values and non-finite floats are dropped; nested mappings become their
    JSON text and anything else becomes its string form.
    """

    if not raw:
        return {}
    extras: dict[str, ExtraValue] = {}
    for key, value in raw.items():
        narrowed = _narrow_extra(value)
        if narrowed is None:
            continue
        extras[str(key)] = narrowed
    return extras


def normalize_sms(body: Any, sender: Any, timestamp: Timestamp) -> InboundEvent:
    """Build an SMS event, rejecting blank body or sender and unreadable times."""

    body = _as_text(body)
    sender = _as_text(sender)
    when = _read_timestamp(timestamp)
    event = InboundEvent(
        source_type=SourceType.SMS,
        content=body or "",
        timestamp=when or datetime.now(timezone.utc),
        sender_number=sender or "",
    )
    if _is_blank(body) or _is_blank(sender):
        raise InvalidEventError(event, INVALID_SMS_REASON)
    if when is None:
        raise InvalidEventError(event, INVALID_TIMESTAMP_REASON)
    return event


def notification_content(title: Optional[str], text: Optional[str]) -> str:
    """Combine title and text the same way for matching and history."""

    title = _as_text(title) or ""
    text = _as_text(text) or ""
    if title.strip() and text.strip():
        return f"{title}: {text}"
    return title if title.strip() else text


def normalize_notification(
    package_name: Any,
    app_label: Any,
    title: Any,
    text: Any,
    post_time: Timestamp,
    extras: Optional[Mapping[str, Any]] = None,
) -> InboundEvent:
    """Build a notification event, rejecting blank title and text and unreadable times."""

    package_name = _as_text(package_name) or ""
    app_label = _as_text(app_label)
    title = _as_text(title)
    text = _as_text(text)
    when = _read_timestamp(post_time)
    content = notification_content(title, text)
    event = InboundEvent(
        source_type=SourceType.NOTIFICATION,
        content=content,
        timestamp=when or datetime.now(timezone.utc),
        package_name=package_name,
        app_label=app_label or package_name,
        title=title or "",
        text=text or "",
        extras=normalize_extras(extras if isinstance(extras, Mapping) else None),
    )
    if not content.strip():
        raise InvalidEventError(event, INVALID_NOTIFICATION_REASON)
    if when is None:
        raise InvalidEventError(event, INVALID_TIMESTAMP_REASON)
    return event


def mask_sender(sender: Any) -> str:
    """Mask a phone number or address for logs, keeping it recognizable."""

    sender = _as_text(sender)
    if sender and len(sender) > 4:
        return f"{sender[:2]}***{sender[-2:]}"
    return "***"
