"""Rule store: validated CRUD over a rule repository.

Validation runs before any write so a rejected rule never leaves partial
state behind. Timestamps are owned here, not by callers.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from core.models import Rule, RuleSnapshot, SourceType
from core.ports import RuleRepositoryPort
from core.rules_engine import RuleValidationError, validate_rule

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RuleNotFoundError(LookupError):
    """Raised when a rule id does not exist."""


class RuleStore:
    """Rule CRUD and active-rule queries."""

    def __init__(self, repository: RuleRepositoryPort, clock: Clock = utc_now) -> None:
        self._repository = repository
        self._clock = clock

    @staticmethod
    def _check(rule: Rule) -> None:
        result = validate_rule(rule)
        if not result.is_valid:
            raise RuleValidationError(result.errors)

    def create(self, rule: Rule) -> int:
        """Validate and insert a rule, returning its new id."""

        self._check(rule)
        now = self._clock()
        rule_id = self._repository.insert_rule(replace(rule, id=None, created_at=now, updated_at=now))
        LOGGER.info("Rule %s created (%s)", rule_id, rule.name)
        return rule_id

    def update(self, rule: Rule) -> None:
        """Validate and replace an existing rule; created_at is preserved."""

        if rule.id is None:
            raise RuleNotFoundError("Cannot update a rule without an id")
        self._check(rule)
        existing = self._repository.get_rule(rule.id)
        if existing is None:
            raise RuleNotFoundError(f"Rule {rule.id} not found")
        updated = replace(rule, created_at=existing.created_at, updated_at=self._clock())
        self._repository.update_rule(updated)
        LOGGER.info("Rule %s updated", rule.id)

    def delete(self, rule_id: int) -> None:
        if not self._repository.delete_rule(rule_id):
            raise RuleNotFoundError(f"Rule {rule_id} not found")
        LOGGER.info("Rule %s deleted", rule_id)

    def delete_all(self) -> int:
        return self._repository.delete_all_rules()

    def set_active(self, rule_id: int, is_active: bool) -> None:
        if not self._repository.set_rule_active(rule_id, is_active, self._clock()):
            raise RuleNotFoundError(f"Rule {rule_id} not found")

    def get_by_id(self, rule_id: int) -> Optional[Rule]:
        return self._repository.get_rule(rule_id)

    def list_all(self) -> list[Rule]:
        return self._repository.list_rules()

    def get_active(self, source_type: SourceType) -> list[Rule]:
        return self._repository.list_rules(source_type=source_type, active_only=True)

    def count_active(self, source_type: Optional[SourceType] = None) -> int:
        return len(self._repository.list_rules(source_type=source_type, active_only=True))

    def snapshot(self, source_type: SourceType) -> RuleSnapshot:
        """Immutable view of the active rules for one source type."""

        rules = sorted(self.get_active(source_type), key=lambda rule: rule.id or 0)
        return RuleSnapshot(as_of=self._clock(), rules=tuple(rules))
