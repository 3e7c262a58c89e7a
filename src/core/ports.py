"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage and transport adapters so
that the core can be reused with different backends.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from core.models import OutgoingRequest, Rule, SourceType


class RuleRepositoryPort(Protocol):
    """Rule persistence required by the rule store."""

    def insert_rule(self, rule: Rule) -> int:
        ...

    def update_rule(self, rule: Rule) -> bool:
        ...

    def delete_rule(self, rule_id: int) -> bool:
        ...

    def delete_all_rules(self) -> int:
        ...

    def get_rule(self, rule_id: int) -> Optional[Rule]:
        ...

    def list_rules(
        self,
        source_type: Optional[SourceType] = None,
        active_only: bool = False,
    ) -> list[Rule]:
        ...

    def set_rule_active(self, rule_id: int, is_active: bool, updated_at: datetime) -> bool:
        ...


class HistoryRepositoryPort(Protocol):
    """History persistence required by the history recorder.

    Rows are dicts keyed by column name; only the recorder builds them.
    """

    def insert_history(self, row: dict[str, Any]) -> int:
        ...

    def update_history(self, history_id: int, changes: dict[str, Any]) -> None:
        ...


@dataclass(frozen=True)
class TransportResponse:
    """Status code and decoded body of an HTTP response."""

    status_code: int
    body: Optional[str]
    reason: str = ""


class TransportError(Exception):
    """Network-level failure raised by transports (DNS, connect, reset, timeout)."""


class TransportPort(Protocol):
    """Sends one HTTP request; raises on network-level failure."""

    async def send(self, request: OutgoingRequest) -> TransportResponse:
        ...
