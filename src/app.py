"""Application entry point for hookrelay.

The CLI stands in for the platform receivers (SMS and notification sources)
and for the rule and history screens: it feeds raw events into the core
pipeline and exposes the rule store and history projections.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Optional

from art import tprint
from rich.console import Console

import settings
from adapters.history_formatting import (
    export_history,
    format_statistics,
    format_summary,
    history_table,
    record_to_dict,
    rules_table,
)
from adapters.http_transport import HttpxTransport
from adapters.sqlite_storage import SQLiteStorage
from core.delivery import DeliveryEngine
from core.history import HistoryRecorder
from core.models import ForwardingStatus, HistoryFilter, Rule, SourceType
from core.processor import DispatchResult, ForwardingProcessor
from core.rule_store import RuleNotFoundError, RuleStore
from core.rules_engine import RuleValidationError, rule_from_config

NAME = "HOOKRELAY"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(verbose: bool = False) -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False) and not verbose:
        return

    level_name = "DEBUG" if verbose else str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True) or verbose:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/hookrelay.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # Request-level chatter from httpx duplicates our own delivery logs.
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _open_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


def _apply_retention(storage: SQLiteStorage) -> None:
    keep = settings.HISTORY.retention
    if keep <= 0:
        return
    removed = storage.trim_history(keep)
    if removed:
        LOGGER.info("History retention removed %s rows (keeping %s)", removed, keep)


# Event ingestion


def _build_processor(storage: SQLiteStorage, transport: HttpxTransport) -> ForwardingProcessor:
    return ForwardingProcessor(
        rule_store=RuleStore(storage),
        history=HistoryRecorder(storage),
        delivery=DeliveryEngine(transport, settings.DELIVERY),
    )


def _parse_time(value: Any) -> Any:
    # Unreadable values are passed on so the rejection lands in history.
    if value is None:
        return datetime.now(timezone.utc)
    return value


async def _process_line(processor: ForwardingProcessor, payload: dict) -> list[DispatchResult]:
    kind = str(payload.get("type", "")).lower()
    if kind == "sms":
        return await processor.process_sms(
            payload.get("body"),
            payload.get("sender"),
            _parse_time(payload.get("timestamp")),
        )
    if kind == "notification":
        return await processor.process_notification(
            package_name=payload.get("packageName") or payload.get("package_name") or "",
            app_label=payload.get("appLabel") or payload.get("app_label"),
            title=payload.get("title"),
            text=payload.get("text"),
            post_time=_parse_time(payload.get("postTime") or payload.get("post_time")),
            extras=payload.get("extras"),
        )
    raise ValueError(f"Unknown event type: {kind!r}")


async def _ingest(lines: Iterable[str]) -> tuple[int, int]:
    """Process JSON-lines events one by one and return (events, deliveries)."""

    storage = _open_storage()
    _apply_retention(storage)
    events = 0
    deliveries = 0
    async with HttpxTransport(timeout=settings.DELIVERY.timeout_seconds) as transport:
        processor = _build_processor(storage, transport)
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                results = await _process_line(processor, json.loads(line))
            except Exception:
                LOGGER.exception("Error while processing event")
                continue
            events += 1
            deliveries += len(results)
    return events, deliveries


async def _process_single(payload: dict) -> list[DispatchResult]:
    storage = _open_storage()
    async with HttpxTransport(timeout=settings.DELIVERY.timeout_seconds) as transport:
        processor = _build_processor(storage, transport)
        return await _process_line(processor, payload)


def _print_results(results: list[DispatchResult]) -> None:
    if not results:
        print("No rule forwarded this event (see history for the reason).")
        return
    for result in results:
        print(f"[{result.status.value}] rule {result.rule.id} ({result.rule.name}): {result.outcome}")


def _cmd_ingest(args: argparse.Namespace) -> int:
    _print_banner()
    if args.file == "-":
        events, deliveries = asyncio.run(_ingest(sys.stdin))
    else:
        with open(args.file, "r", encoding="utf-8") as handle:
            events, deliveries = asyncio.run(_ingest(handle))
    LOGGER.info("Ingest complete: events=%s, deliveries=%s", events, deliveries)
    print(f"Processed {events} events, {deliveries} deliveries.")
    return 0


def _cmd_sms(args: argparse.Namespace) -> int:
    payload = {"type": "sms", "body": args.body, "sender": args.sender, "timestamp": args.timestamp}
    _print_results(asyncio.run(_process_single(payload)))
    return 0


def _cmd_notification(args: argparse.Namespace) -> int:
    payload = {
        "type": "notification",
        "packageName": args.package,
        "appLabel": args.app_label,
        "title": args.title,
        "text": args.text,
        "postTime": args.post_time,
        "extras": json.loads(args.extras) if args.extras else None,
    }
    _print_results(asyncio.run(_process_single(payload)))
    return 0


# Rules


def _parse_headers(values: Optional[list[str]]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values or []:
        key, sep, header_value = value.partition(":")
        if not sep or not key.strip():
            raise ValueError(f"Header must look like 'Name: value', got {value!r}")
        headers[key.strip()] = header_value.strip()
    return headers


def _print_validation_errors(errors: list[str]) -> None:
    print("Rule rejected:")
    for error in errors:
        print(f"  - {error}")


def _cmd_rules(args: argparse.Namespace, console: Console) -> int:
    store = RuleStore(_open_storage())

    if args.rules_command == "add":
        rule = Rule(
            name=args.name,
            pattern=args.pattern,
            source_type=SourceType(args.source.upper()),
            endpoint=args.endpoint,
            package_filter=args.package,
            is_regex=args.regex,
            method=args.method.upper(),
            headers=_parse_headers(args.header),
            is_active=not args.inactive,
        )
        try:
            rule_id = store.create(rule)
        except RuleValidationError as exc:
            _print_validation_errors(exc.errors)
            return 1
        print(f"Rule {rule_id} created.")
        return 0

    if args.rules_command == "list":
        console.print(rules_table(store.list_all()))
        return 0

    if args.rules_command == "show":
        rule = store.get_by_id(args.id)
        if rule is None:
            print(f"Rule {args.id} not found.")
            return 1
        console.print_json(json.dumps(_rule_to_json(rule)))
        return 0

    if args.rules_command == "import":
        with open(args.file, "r", encoding="utf-8") as handle:
            entries = json.load(handle)
        created = 0
        for index, entry in enumerate(entries, start=1):
            try:
                store.create(rule_from_config(entry))
            except RuleValidationError as exc:
                print(f"Entry {index} skipped: {'; '.join(exc.errors)}")
                continue
            created += 1
        print(f"Imported {created} of {len(entries)} rules.")
        return 0 if created == len(entries) else 1

    try:
        if args.rules_command == "delete":
            store.delete(args.id)
            print(f"Rule {args.id} deleted.")
        elif args.rules_command in {"enable", "disable"}:
            store.set_active(args.id, args.rules_command == "enable")
            print(f"Rule {args.id} {args.rules_command}d.")
        elif args.rules_command == "edit":
            return _edit_rule(store, args)
    except RuleNotFoundError as exc:
        print(str(exc))
        return 1
    return 0


def _edit_rule(store: RuleStore, args: argparse.Namespace) -> int:
    rule = store.get_by_id(args.id)
    if rule is None:
        raise RuleNotFoundError(f"Rule {args.id} not found")
    changes: dict[str, Any] = {}
    for field_name in ("name", "pattern", "endpoint"):
        value = getattr(args, field_name)
        if value is not None:
            changes[field_name] = value
    if args.method is not None:
        changes["method"] = args.method.upper()
    if args.package is not None:
        changes["package_filter"] = args.package or None
    if args.regex is not None:
        changes["is_regex"] = args.regex == "yes"
    if args.header is not None:
        changes["headers"] = _parse_headers(args.header)
    try:
        store.update(replace(rule, **changes))
    except RuleValidationError as exc:
        _print_validation_errors(exc.errors)
        return 1
    print(f"Rule {args.id} updated.")
    return 0


def _rule_to_json(rule: Rule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "pattern": rule.pattern,
        "isRegex": rule.is_regex,
        "sourceType": rule.source_type.value,
        "packageFilter": rule.package_filter,
        "endpoint": rule.endpoint,
        "method": rule.method,
        "headers": dict(rule.headers),
        "isActive": rule.is_active,
        "createdAt": rule.created_at.isoformat() if rule.created_at else None,
        "updatedAt": rule.updated_at.isoformat() if rule.updated_at else None,
    }


# History


def _history_filter(args: argparse.Namespace) -> HistoryFilter:
    matched: Optional[bool] = None
    if args.matched:
        matched = True
    elif args.unmatched:
        matched = False
    return HistoryFilter(
        search=args.search,
        app=args.app,
        matched=matched,
        status=ForwardingStatus(args.status.upper()) if args.status else None,
        source_type=SourceType(args.source.upper()) if args.source else None,
        rule_id=args.rule,
    )


def _cmd_history(args: argparse.Namespace, console: Console) -> int:
    storage = _open_storage()

    if args.history_command == "list":
        history_filter = _history_filter(args)
        records = storage.list_history(history_filter, page=args.page, page_size=args.page_size)
        console.print(history_table(records))
        total = storage.count_history(history_filter)
        print(f"page {args.page} ({len(records)} of {total} rows)")
        return 0

    if args.history_command == "show":
        record = storage.get_history(args.id)
        if record is None:
            print(f"History entry {args.id} not found.")
            return 1
        print(format_summary(record))
        console.print_json(json.dumps(record_to_dict(record)))
        return 0

    if args.history_command == "stats":
        stats = storage.statistics(_history_filter(args))
        active = RuleStore(storage).count_active()
        print(format_statistics(stats, active_rules=active))
        return 0

    if args.history_command == "apps":
        for app in storage.distinct_apps():
            print(f"{app.package_name}\t{app.app_name or ''}\t{app.count}")
        return 0

    if args.history_command == "export":
        history_filter = _history_filter(args)
        total = storage.count_history(history_filter)
        records = storage.list_history(history_filter, page=0, page_size=max(total, 1))
        path = Path(args.output)
        fmt = args.format or path.suffix.lstrip(".").lower() or "json"
        written = export_history(records, path, fmt)
        print(f"Exported {written} rows to {path}")
        return 0

    if args.history_command == "delete":
        if args.all:
            removed = storage.delete_all_history()
        elif args.rule is not None:
            removed = storage.delete_history_by_rule(args.rule)
        elif args.id is not None:
            removed = int(storage.delete_history(args.id))
        else:
            print("Nothing to delete: pass an id, --rule or --all.")
            return 1
        print(f"Deleted {removed} rows.")
        return 0

    if args.history_command == "trim":
        removed = storage.trim_history(args.keep)
        print(f"Deleted {removed} rows, kept the newest {args.keep}.")
        return 0

    return 1


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--search", help="Free text over sender, app, title and body")
    parser.add_argument("--app", help="Package name or app label")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--matched", action="store_true", help="Only rows that matched a rule")
    group.add_argument("--unmatched", action="store_true", help="Only rows without a rule")
    parser.add_argument("--status", choices=[status.value.lower() for status in ForwardingStatus])
    parser.add_argument("--source", choices=["sms", "notification"])
    parser.add_argument("--rule", type=int, help="Rule id")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hookrelay")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to the console")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Process JSON-lines events from a file or stdin")
    ingest.add_argument("file", nargs="?", default="-")

    sms = subparsers.add_parser("sms", help="Process one SMS")
    sms.add_argument("--body", required=True)
    sms.add_argument("--sender", required=True)
    sms.add_argument("--timestamp", type=int, help="Epoch milliseconds (default: now)")

    notification = subparsers.add_parser("notification", help="Process one app notification")
    notification.add_argument("--package", required=True)
    notification.add_argument("--app-label")
    notification.add_argument("--title", default="")
    notification.add_argument("--text", default="")
    notification.add_argument("--post-time", type=int, help="Epoch milliseconds (default: now)")
    notification.add_argument("--extras", help="JSON object of notification extras")

    rules = subparsers.add_parser("rules", help="Manage forwarding rules")
    rules_sub = rules.add_subparsers(dest="rules_command", required=True)
    add = rules_sub.add_parser("add", help="Create a rule")
    add.add_argument("--name", required=True)
    add.add_argument("--pattern", required=True)
    add.add_argument("--source", choices=["sms", "notification"], default="sms")
    add.add_argument("--endpoint", required=True)
    add.add_argument("--package", help="Notification package filter (default: any app)")
    add.add_argument("--regex", action="store_true", help="Treat the pattern as a regex")
    add.add_argument("--method", type=str.upper, default="POST", choices=["GET", "POST", "PUT", "PATCH"])
    add.add_argument("--header", action="append", help="Extra header, 'Name: value'")
    add.add_argument("--inactive", action="store_true")
    edit = rules_sub.add_parser("edit", help="Change fields of a rule")
    edit.add_argument("id", type=int)
    edit.add_argument("--name")
    edit.add_argument("--pattern")
    edit.add_argument("--endpoint")
    edit.add_argument("--package", help="Empty string clears the filter")
    edit.add_argument("--regex", choices=["yes", "no"])
    edit.add_argument("--method", type=str.upper, choices=["GET", "POST", "PUT", "PATCH"])
    edit.add_argument("--header", action="append")
    rules_sub.add_parser("list", help="List rules")
    for name in ("show", "delete", "enable", "disable"):
        sub = rules_sub.add_parser(name)
        sub.add_argument("id", type=int)
    import_parser = rules_sub.add_parser("import", help="Create rules from a JSON list")
    import_parser.add_argument("file")

    history = subparsers.add_parser("history", help="Inspect forwarding history")
    history_sub = history.add_subparsers(dest="history_command", required=True)
    listing = history_sub.add_parser("list")
    _add_filter_arguments(listing)
    listing.add_argument("--page", type=int, default=0)
    listing.add_argument("--page-size", type=int, default=50)
    show = history_sub.add_parser("show")
    show.add_argument("id", type=int)
    stats = history_sub.add_parser("stats")
    _add_filter_arguments(stats)
    history_sub.add_parser("apps", help="Notification sources seen in history")
    export = history_sub.add_parser("export")
    _add_filter_arguments(export)
    export.add_argument("output")
    export.add_argument("--format", choices=["json", "csv"])
    delete = history_sub.add_parser("delete")
    delete.add_argument("id", type=int, nargs="?")
    delete.add_argument("--rule", type=int)
    delete.add_argument("--all", action="store_true")
    trim = history_sub.add_parser("trim", help="Keep only the newest rows")
    trim.add_argument("--keep", type=int, default=settings.HISTORY.retention)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    console = Console()

    if args.command == "ingest":
        return _cmd_ingest(args)
    if args.command == "sms":
        return _cmd_sms(args)
    if args.command == "notification":
        return _cmd_notification(args)
    if args.command == "rules":
        return _cmd_rules(args, console)
    if args.command == "history":
        return _cmd_history(args, console)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
