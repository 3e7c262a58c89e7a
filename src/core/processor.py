"""Core forwarding pipeline.

This module is integration-agnostic. It only relies on the rule store, the
history recorder and the delivery engine, which in turn talk to ports.

Per event the order is strict:
1) Normalize the raw input; invalid input is logged to history and dropped
2) Load the active rules for the event's source type
3) No active rules or no match: one NO_RULE_MATCHED row, stop
4) Fan out one task per matched rule: RECEIVED row, deliver, terminal status
5) Join all tasks and return their outcomes
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from core.delivery import DeliveryEngine, DeliveryOutcome, NetworkError, UnexpectedError
from core.history import HistoryRecorder
from core.models import ForwardingStatus, InboundEvent, Rule
from core.normalizer import (
    InvalidEventError,
    Timestamp,
    mask_sender,
    normalize_notification,
    normalize_sms,
)
from core.rule_store import RuleStore
from core.rules_engine import match_rules

LOGGER = logging.getLogger(__name__)

NO_ACTIVE_RULES_REASON = "no active rules configured"
NO_MATCH_REASON = "content did not match any rule"


@dataclass(frozen=True)
class DispatchResult:
    """Terminal result of forwarding one event to one rule."""

    rule: Rule
    history_id: Optional[int]
    outcome: DeliveryOutcome
    status: ForwardingStatus


class ForwardingProcessor:
    """Orchestrates matching, delivery and history for inbound events."""

    def __init__(
        self,
        rule_store: RuleStore,
        history: HistoryRecorder,
        delivery: DeliveryEngine,
    ) -> None:
        self._rules = rule_store
        self._history = history
        self._delivery = delivery

    async def process_sms(
        self,
        body: Any,
        sender: Any,
        timestamp: Timestamp,
    ) -> list[DispatchResult]:
        """Normalize and process one raw SMS."""

        LOGGER.info("SMS received from %s", mask_sender(sender))
        try:
            event = normalize_sms(body, sender, timestamp)
        except InvalidEventError as exc:
            LOGGER.warning("Rejected SMS: %s", exc.reason)
            self._history.record_received(exc.event, reason=exc.reason)
            return []
        return await self.handle(event)

    async def process_notification(
        self,
        package_name: Any,
        app_label: Any,
        title: Any,
        text: Any,
        post_time: Timestamp,
        extras: Optional[Mapping[str, Any]] = None,
    ) -> list[DispatchResult]:
        """Normalize and process one raw app notification."""

        LOGGER.info("Notification received from %s (%s)", app_label, package_name)
        try:
            event = normalize_notification(package_name, app_label, title, text, post_time, extras)
        except InvalidEventError as exc:
            LOGGER.warning("Rejected notification from %s: %s", package_name, exc.reason)
            self._history.record_received(exc.event, reason=exc.reason)
            return []
        return await self.handle(event)

    async def handle(self, event: InboundEvent) -> list[DispatchResult]:
        """Process one normalized event through the pipeline."""

        snapshot = self._rules.snapshot(event.source_type)
        LOGGER.debug("Found %s active %s rules", len(snapshot.rules), event.source_type.value)

        if not snapshot.rules:
            self._history.record_received(event, reason=NO_ACTIVE_RULES_REASON)
            return []

        matches = match_rules(event, snapshot.rules)
        LOGGER.info(
            "%s of %s active %s rules matched",
            len(matches),
            len(snapshot.rules),
            event.source_type.value,
        )
        if not matches:
            self._history.record_received(event, reason=NO_MATCH_REASON)
            return []

        # Each task catches its own failures, so gather never cancels siblings.
        results = await asyncio.gather(*(self._dispatch(event, rule) for rule in matches))
        return list(results)

    async def _dispatch(self, event: InboundEvent, rule: Rule) -> DispatchResult:
        history_id: Optional[int] = None
        try:
            request = self._delivery.build_request(event, rule)
            LOGGER.debug(
                "Dispatching %s to %r (%s %s)",
                event.source_type.value,
                rule.name,
                request.method,
                request.url,
            )
            history_id = self._history.record_received(event, rule, request)

            def _on_retry(attempt: int, delay: float, error: Exception) -> None:
                self._history.mark_retrying(history_id, attempt, error)

            outcome = await self._delivery.send(request, on_retry=_on_retry)
            status = self._history.record_outcome(history_id, outcome)
        except Exception as exc:
            LOGGER.exception("Unexpected error forwarding to rule %r", rule.name)
            outcome = UnexpectedError(message=f"Unexpected error: {exc}")
            status = ForwardingStatus.FAILED
            try:
                if history_id is None:
                    history_id = self._history.record_received(event, rule)
                self._history.record_outcome(history_id, outcome)
            except Exception:
                LOGGER.exception("Could not record failure for rule %r", rule.name)
            return DispatchResult(rule=rule, history_id=history_id, outcome=outcome, status=status)

        if status == ForwardingStatus.SUCCESS:
            LOGGER.info("Forwarded %s to %r", event.source_type.value, rule.name)
        elif isinstance(outcome, NetworkError):
            LOGGER.error("Forwarding %s to %r failed: %s", event.source_type.value, rule.name, outcome.message)
        else:
            LOGGER.warning("Forwarding %s to %r failed: %s", event.source_type.value, rule.name, outcome)
        return DispatchResult(rule=rule, history_id=history_id, outcome=outcome, status=status)
