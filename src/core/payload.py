"""Request construction for forwarded events (core domain).

The payload is assembled as an ordered list of (key, value) pairs. Pairs with
an absent value are dropped before serialization, so the wire body never
contains JSON null, and every value is already a primitive by the time it
reaches the serializer.
"""

from __future__ import annotations

import json
from typing import Iterable, List, Optional, Tuple, Union

from core.models import InboundEvent, OutgoingRequest, Rule, SourceType
from core.rules_engine import normalize_method

Primitive = Union[str, int, float, bool]
PayloadPairs = List[Tuple[str, Primitive]]

DEFAULT_CONTENT_TYPE = "application/json"


def _epoch_millis(event: InboundEvent) -> int:
    return int(event.timestamp.timestamp() * 1000)


def _flatten(value: object) -> Optional[Primitive]:
    """Reduce a value to a JSON primitive; collections become their string form."""

    if value is None:
        return None
    if isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    if isinstance(value, (list, tuple)):
        return json.dumps([str(item) for item in value], ensure_ascii=False)
    return str(value)


def build_payload_pairs(event: InboundEvent) -> PayloadPairs:
    """Return the ordered payload fields for an event, skipping absent values."""

    candidates: List[Tuple[str, object]] = [
        ("sourceType", event.source_type.value),
        ("messageBody", event.content),
        ("timestamp", _epoch_millis(event)),
    ]
    if event.source_type == SourceType.SMS:
        candidates.append(("senderNumber", event.sender_number))
    else:
        candidates.extend(
            [
                ("sourcePackage", event.package_name),
                ("sourceAppName", event.app_label),
                ("notificationTitle", event.title),
                ("notificationText", event.text),
                ("extras", {key: _extra_for_json(value) for key, value in event.extras.items()}),
            ]
        )

    pairs: PayloadPairs = []
    for key, value in candidates:
        flat = _flatten(value)
        if flat is None:
            continue
        pairs.append((key, flat))
    return pairs


def _extra_for_json(value: object) -> object:
    if isinstance(value, tuple):
        return list(value)
    return value


def serialize_body(pairs: Iterable[Tuple[str, Primitive]]) -> str:
    """Serialize payload pairs to a JSON object string."""

    return json.dumps(dict(pairs), ensure_ascii=False)


def _stringify(value: Primitive) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def query_params(pairs: Iterable[Tuple[str, Primitive]]) -> Tuple[Tuple[str, str], ...]:
    """Stringify payload pairs for use as GET query parameters."""

    return tuple((key, _stringify(value)) for key, value in pairs)


def build_headers(rule: Rule, event: InboundEvent, user_agent: str) -> dict[str, str]:
    """Merge rule headers with defaults; defaults only fill absent keys."""

    headers = dict(rule.headers)
    present = {key.lower() for key in headers}
    defaults = (
        ("Content-Type", DEFAULT_CONTENT_TYPE),
        ("User-Agent", user_agent),
        ("X-Source-Type", event.source_type.value),
    )
    for key, value in defaults:
        if key.lower() not in present:
            headers[key] = value
    return headers


def build_request(event: InboundEvent, rule: Rule, user_agent: str) -> OutgoingRequest:
    """Build the complete, pre-serialized request for one rule."""

    method = normalize_method(rule.method)
    pairs = build_payload_pairs(event)
    headers = build_headers(rule, event, user_agent)
    if method == "GET":
        return OutgoingRequest(
            method=method,
            url=rule.endpoint,
            headers=headers,
            params=query_params(pairs),
        )
    return OutgoingRequest(
        method=method,
        url=rule.endpoint,
        headers=headers,
        body=serialize_body(pairs),
    )
