"""Shared history display and export helpers.

Keeping formatting here prevents drift between the CLI listing, the detail
view and exports.
"""

from __future__ import annotations

import csv
import json
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from rich.table import Table
from rich.text import Text

from core.models import ForwardingStatus, HistoryRecord, HistoryStatistics, Rule, SourceType
from core.normalizer import mask_sender

_STATUS_DESCRIPTIONS = {
    ForwardingStatus.SUCCESS: "Success",
    ForwardingStatus.FAILED: "Failed",
    ForwardingStatus.RECEIVED: "Pending",
    ForwardingStatus.RETRY: "Retrying",
    ForwardingStatus.NO_RULE_MATCHED: "No rule matched",
}

_STATUS_STYLES = {
    ForwardingStatus.SUCCESS: "green",
    ForwardingStatus.FAILED: "red",
    ForwardingStatus.RECEIVED: "cyan",
    ForwardingStatus.RETRY: "yellow",
    ForwardingStatus.NO_RULE_MATCHED: "dim",
}


def clip_text(value: Optional[str], limit: int = 64) -> str:
    """Truncate text for single-line display."""

    value = (value or "").replace("\n", " ")
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


def http_status_description(code: Optional[int]) -> Optional[str]:
    if code is None:
        return None
    if 200 <= code < 300:
        return "Success"
    if 300 <= code < 400:
        return "Redirect"
    if 400 <= code < 500:
        return "Client Error"
    if 500 <= code < 600:
        return "Server Error"
    return "Unknown"


def format_summary(record: HistoryRecord) -> str:
    """One-line status summary, e.g. ``Failed - Server Error (500)``."""

    status = _STATUS_DESCRIPTIONS[record.status]
    http_desc = http_status_description(record.response_code)
    if http_desc is not None:
        return f"{status} - {http_desc} ({record.response_code})"
    if record.error_message:
        return f"{status} - {record.error_message}"
    return status


def format_source_label(record: HistoryRecord) -> str:
    """Masked sender for SMS, ``App (package)`` for notifications."""

    if record.source_type == SourceType.SMS:
        return mask_sender(record.sender_number)
    package = record.source_package or ""
    app_name = record.source_app_name
    if app_name and app_name != package:
        return f"{app_name} ({package})"
    return package


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def history_table(records: Iterable[HistoryRecord]) -> Table:
    """Build a rich table for a page of history rows."""

    table = Table(show_lines=False, header_style="bold")
    table.add_column("id", justify="right")
    table.add_column("time")
    table.add_column("source")
    table.add_column("from")
    table.add_column("rule")
    table.add_column("status")
    table.add_column("message")
    for record in records:
        table.add_row(
            str(record.id),
            _format_time(record.timestamp),
            record.source_type.value,
            format_source_label(record),
            record.rule_name or "",
            Text(format_summary(record), style=_STATUS_STYLES[record.status]),
            clip_text(record.message_body, 48),
        )
    return table


def rules_table(rules: Iterable[Rule]) -> Table:
    """Build a rich table listing rules."""

    table = Table(header_style="bold")
    table.add_column("id", justify="right")
    table.add_column("name")
    table.add_column("source")
    table.add_column("package")
    table.add_column("pattern")
    table.add_column("endpoint")
    table.add_column("active")
    for rule in rules:
        pattern = f"/{rule.pattern}/" if rule.is_regex else rule.pattern
        package = rule.package_filter or ("*" if rule.source_type == SourceType.NOTIFICATION else "")
        table.add_row(
            str(rule.id),
            rule.name,
            rule.source_type.value,
            package,
            clip_text(pattern, 32),
            f"{rule.method} {rule.endpoint}",
            Text("yes", style="green") if rule.is_active else Text("no", style="dim"),
        )
    return table


def format_statistics(stats: HistoryStatistics, active_rules: Optional[int] = None) -> str:
    lines = [
        f"Total:           {stats.total}",
        f"Matched:         {stats.matched} ({stats.match_rate:.1f}%)",
        f"Success:         {stats.success} ({stats.success_rate:.1f}%)",
        f"Failed:          {stats.failed}",
        f"Retrying:        {stats.retry}",
        f"No rule matched: {stats.no_rule_matched}",
    ]
    if active_rules is not None:
        lines.insert(0, f"Active rules:    {active_rules}")
    return "\n".join(lines)


def record_to_dict(record: HistoryRecord) -> dict[str, Any]:
    """Flatten a record to JSON/CSV friendly values."""

    data = asdict(record)
    data["source_type"] = record.source_type.value
    data["status"] = record.status.value
    data["timestamp"] = record.timestamp.isoformat() if record.timestamp else None
    data["forwarded_at"] = record.forwarded_at.isoformat() if record.forwarded_at else None
    if record.request_headers is not None:
        data["request_headers"] = json.dumps(record.request_headers, sort_keys=True)
    return data


def export_history(records: Iterable[HistoryRecord], path: Path, fmt: str) -> int:
    """Write records to a JSON or CSV file and return how many were written."""

    rows = [record_to_dict(record) for record in records]
    if fmt == "json":
        path.write_text(json.dumps(rows, indent=2, ensure_ascii=False), encoding="utf-8")
    elif fmt == "csv":
        fieldnames = list(rows[0].keys()) if rows else list(HistoryRecord.__dataclass_fields__)
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=fieldnames)
            writer.writeheader()
            writer.writerows(rows)
    else:
        raise ValueError(f"Unsupported export format: {fmt}")
    return len(rows)
