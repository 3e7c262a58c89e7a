"""History recorder (core domain).

Every inbound event yields at least one row: a NO_RULE_MATCHED row when it is
rejected or matches nothing, otherwise one RECEIVED row per matched rule that
is later moved to SUCCESS or FAILED in place.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from core.delivery import DeliveryOutcome, HttpError, NetworkError, Success, UnexpectedError
from core.models import ForwardingStatus, InboundEvent, OutgoingRequest, Rule
from core.ports import HistoryRepositoryPort
from core.rule_store import Clock, utc_now

LOGGER = logging.getLogger(__name__)


def _event_snapshot(event: InboundEvent) -> dict[str, Any]:
    return {
        "source_type": event.source_type.value,
        "timestamp": event.timestamp,
        "message_body": event.content,
        "sender_number": event.sender_number,
        "source_package": event.package_name,
        "source_app_name": event.app_label,
        "notification_title": event.title,
        "notification_text": event.text,
    }


def _request_body(request: OutgoingRequest) -> Optional[str]:
    if request.body is not None:
        return request.body
    if request.params:
        return urlencode(request.params)
    return None


class HistoryRecorder:
    """Writes and updates audit rows through a history repository."""

    def __init__(self, repository: HistoryRepositoryPort, clock: Clock = utc_now) -> None:
        self._repository = repository
        self._clock = clock

    def record_received(
        self,
        event: InboundEvent,
        matched_rule: Optional[Rule] = None,
        request: Optional[OutgoingRequest] = None,
        reason: Optional[str] = None,
    ) -> int:
        """Write the initial row for an event.

        With a rule the row is RECEIVED and carries the request snapshot;
        without one it is NO_RULE_MATCHED with every delivery field empty.
        """

        row = _event_snapshot(event)
        if matched_rule is None:
            row.update(
                rule_id=None,
                matched_rule=False,
                status=ForwardingStatus.NO_RULE_MATCHED.value,
                error_message=reason,
            )
            return self._repository.insert_history(row)

        row.update(
            rule_id=matched_rule.id,
            rule_name=matched_rule.name,
            matched_rule=True,
            status=ForwardingStatus.RECEIVED.value,
            endpoint=request.url if request else matched_rule.endpoint,
            method=request.method if request else matched_rule.method,
            request_headers=request.headers if request else dict(matched_rule.headers),
            request_body=_request_body(request) if request else None,
            forwarded_at=self._clock(),
        )
        return self._repository.insert_history(row)

    def mark_retrying(self, history_id: int, attempt: int, error: Exception) -> None:
        """Flag a row as waiting for a network retry."""

        self._repository.update_history(
            history_id,
            {
                "status": ForwardingStatus.RETRY.value,
                "error_message": f"Retrying (attempt {attempt}) after: {error}",
            },
        )

    def record_outcome(self, history_id: int, outcome: DeliveryOutcome) -> ForwardingStatus:
        """Move a row to its terminal status and return that status."""

        if isinstance(outcome, Success):
            changes: dict[str, Any] = {
                "status": ForwardingStatus.SUCCESS.value,
                "response_code": outcome.code,
                "response_body": outcome.body,
                "error_message": None,
            }
        elif isinstance(outcome, HttpError):
            changes = {
                "status": ForwardingStatus.FAILED.value,
                "response_code": outcome.code,
                "response_body": outcome.body,
                "error_message": outcome.message,
            }
        elif isinstance(outcome, (NetworkError, UnexpectedError)):
            changes = {
                "status": ForwardingStatus.FAILED.value,
                "error_message": outcome.message,
            }
        else:
            raise TypeError(f"Unsupported delivery outcome: {outcome!r}")

        self._repository.update_history(history_id, changes)
        return ForwardingStatus(changes["status"])
