"""Rule validation and matching logic (core domain)."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import logging
import re
from typing import Iterable, List, Optional

from core.models import HTTP_METHODS, InboundEvent, Rule, SourceType

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a rule; empty errors means valid."""

    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class RuleValidationError(ValueError):
    """Raised when a rule write is rejected."""

    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


def _is_valid_url(url: str) -> bool:
    lowered = url.lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


def validate_rule(rule: Rule) -> ValidationResult:
    """Check a rule and return human-readable errors for every problem found."""

    errors: List[str] = []

    if not rule.name.strip():
        errors.append("Rule name cannot be empty")

    if not rule.pattern.strip():
        errors.append("Pattern cannot be empty")

    if not rule.endpoint.strip():
        errors.append("Endpoint URL cannot be empty")
    elif not _is_valid_url(rule.endpoint):
        errors.append("Endpoint must be a valid HTTP/HTTPS URL")

    if not rule.method.strip():
        errors.append("HTTP method cannot be empty")

    if (
        rule.source_type == SourceType.NOTIFICATION
        and rule.package_filter is not None
        and not rule.package_filter.strip()
    ):
        errors.append("Package filter cannot be empty (use null to match all packages)")

    if rule.is_regex and rule.pattern.strip():
        try:
            re.compile(rule.pattern)
        except re.error as exc:
            errors.append(f"Invalid regex pattern: {exc}")

    return ValidationResult(errors)


def applies_to_package(rule: Rule, package_name: Optional[str]) -> bool:
    """Return True if the rule's package filter admits the given package.

    SMS rules ignore the filter entirely; notification rules without a filter
    accept every package.
    """

    if rule.source_type == SourceType.SMS:
        return True
    return rule.package_filter is None or rule.package_filter == package_name


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None


def content_matches(rule: Rule, content: str) -> bool:
    """Case-insensitive substring or regex search of the rule pattern.

    An uncompilable regex degrades to the substring check.
    """

    if rule.is_regex:
        compiled = _compile(rule.pattern)
        if compiled is not None:
            return compiled.search(content) is not None
        LOGGER.debug("Rule %r has an invalid regex, using substring match", rule.name)
    return rule.pattern.lower() in content.lower()


def _ordering_key(rule: Rule) -> tuple[bool, int, str]:
    return (rule.id is None, rule.id or 0, rule.name)


def match_rules(event: InboundEvent, rules: Iterable[Rule]) -> List[Rule]:
    """Return the rules that apply to the event, ordered by rule id.

    Matching logic:
    - The package check runs first (only meaningful for notifications).
    - The content check is a case-insensitive substring or regex search.
    - A rule id seen twice in the candidates is evaluated once.
    """

    matches: List[Rule] = []
    seen_ids: set[int] = set()

    for rule in sorted(rules, key=_ordering_key):
        if rule.id is not None:
            if rule.id in seen_ids:
                continue
            seen_ids.add(rule.id)

        package_ok = applies_to_package(rule, event.package_name)
        content_ok = package_ok and content_matches(rule, event.content)
        LOGGER.debug(
            "Rule %r - package matches: %s, content matches: %s",
            rule.name,
            package_ok,
            content_ok,
        )
        if content_ok:
            matches.append(rule)

    return matches


def _pick(entry: dict, *keys: str, default=None):
    for key in keys:
        if key in entry:
            return entry[key]
    return default


_TRUE_WORDS = {"true", "yes", "on", "1"}
_FALSE_WORDS = {"false", "no", "off", "0", ""}


def _config_bool(value, field_name: str, errors: list[str]) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in _TRUE_WORDS | _FALSE_WORDS:
        return value.strip().lower() in _TRUE_WORDS
    errors.append(f"{field_name} must be true or false")
    return False


def rule_from_config(entry: dict) -> Rule:
    """Build a Rule from a JSON config entry.

    Accepts both camelCase and snake_case keys so exported rule lists can be
    re-imported without editing.
    """

    if not isinstance(entry, dict):
        raise RuleValidationError(["Rule entry must be a JSON object"])

    source_raw = str(_pick(entry, "sourceType", "source_type", "source", default="SMS")).upper()
    try:
        source_type = SourceType(source_raw)
    except ValueError as exc:
        raise RuleValidationError([f"Unknown source type: {source_raw}"]) from exc

    errors: list[str] = []
    is_regex = _config_bool(_pick(entry, "isRegex", "is_regex", default=False), "isRegex", errors)
    is_active = _config_bool(_pick(entry, "isActive", "is_active", "enabled", default=True), "isActive", errors)
    package_filter = _pick(entry, "packageFilter", "package_filter")
    if package_filter is not None and not isinstance(package_filter, str):
        errors.append("Package filter must be a string")
    headers = _pick(entry, "headers", default={}) or {}
    if not isinstance(headers, dict):
        errors.append("Headers must be a JSON object")
    if errors:
        raise RuleValidationError(errors)

    method = str(_pick(entry, "method", default="POST")).upper()
    return Rule(
        name=str(_pick(entry, "name", default="")),
        pattern=str(_pick(entry, "pattern", default="")),
        source_type=source_type,
        endpoint=str(_pick(entry, "endpoint", "url", default="")),
        package_filter=package_filter,
        is_regex=is_regex,
        method=method,
        headers={str(key): str(value) for key, value in headers.items()},
        is_active=is_active,
    )


def normalize_method(method: str) -> str:
    """Uppercase the method, falling back to POST for anything unrecognized."""

    upper = method.strip().upper()
    return upper if upper in HTTP_METHODS else "POST"
