"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any storage or transport specific types. All of them are frozen:
a rule or event handed to the delivery engine is a value snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union

# Extras carried by notifications are narrowed to these shapes by the normalizer.
ExtraValue = Union[str, int, float, bool, tuple[str, ...]]


class SourceType(str, Enum):
    """Where an inbound event came from."""

    SMS = "SMS"
    NOTIFICATION = "NOTIFICATION"


class ForwardingStatus(str, Enum):
    """Lifecycle status of a history row."""

    RECEIVED = "RECEIVED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RETRY = "RETRY"
    NO_RULE_MATCHED = "NO_RULE_MATCHED"


HTTP_METHODS = ("GET", "POST", "PUT", "PATCH")


@dataclass(frozen=True)
class Rule:
    """Persisted matching and forwarding configuration."""

    name: str
    pattern: str
    source_type: SourceType
    endpoint: str
    id: Optional[int] = None
    package_filter: Optional[str] = None
    is_regex: bool = False
    method: str = "POST"
    headers: Mapping[str, str] = field(default_factory=dict)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        # Read-only copy so a snapshot cannot be changed through a shared dict.
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))


@dataclass(frozen=True)
class RuleSnapshot:
    """Active rules for one source type, as read at a point in time."""

    as_of: datetime
    rules: tuple[Rule, ...]


@dataclass(frozen=True)
class InboundEvent:
    """Canonical, source-agnostic representation of one SMS or notification."""

    source_type: SourceType
    content: str
    timestamp: datetime
    sender_number: Optional[str] = None
    package_name: Optional[str] = None
    app_label: Optional[str] = None
    title: Optional[str] = None
    text: Optional[str] = None
    extras: dict[str, ExtraValue] = field(default_factory=dict)


@dataclass(frozen=True)
class OutgoingRequest:
    """Fully serialized HTTP request ready for a transport."""

    method: str
    url: str
    headers: dict[str, str]
    body: Optional[str] = None
    params: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class HistoryRecord:
    """Audit row for one inbound event or one (event, matched rule) pair."""

    id: int
    rule_id: Optional[int]
    matched_rule: bool
    source_type: SourceType
    status: ForwardingStatus
    timestamp: datetime
    message_body: str
    rule_name: Optional[str] = None
    sender_number: Optional[str] = None
    source_package: Optional[str] = None
    source_app_name: Optional[str] = None
    notification_title: Optional[str] = None
    notification_text: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    request_headers: Optional[dict[str, str]] = None
    request_body: Optional[str] = None
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    forwarded_at: Optional[datetime] = None


@dataclass(frozen=True)
class HistoryFilter:
    """Read-side filters for history listings and statistics."""

    search: Optional[str] = None
    app: Optional[str] = None
    matched: Optional[bool] = None
    status: Optional[ForwardingStatus] = None
    source_type: Optional[SourceType] = None
    rule_id: Optional[int] = None


@dataclass(frozen=True)
class HistoryStatistics:
    """Aggregate counts over history rows."""

    total: int
    matched: int
    success: int
    failed: int
    retry: int = 0
    no_rule_matched: int = 0

    @property
    def success_rate(self) -> float:
        return (self.success / self.total) * 100 if self.total else 0.0

    @property
    def match_rate(self) -> float:
        return (self.matched / self.total) * 100 if self.total else 0.0


@dataclass(frozen=True)
class AppUsage:
    """A notification source seen in history, for app filter pickers."""

    package_name: str
    app_name: Optional[str]
    count: int
