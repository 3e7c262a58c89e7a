"""SQLite storage adapter.

Implements the core RuleRepositoryPort and HistoryRepositoryPort using a
single SQLite database, plus the read-only history projections used by the
CLI (listing, search, statistics, retention).
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional

from core.models import (
    AppUsage,
    ForwardingStatus,
    HistoryFilter,
    HistoryRecord,
    HistoryStatistics,
    Rule,
    SourceType,
)

_HISTORY_COLUMNS = (
    "rule_id",
    "rule_name",
    "matched_rule",
    "source_type",
    "sender_number",
    "source_package",
    "source_app_name",
    "notification_title",
    "notification_text",
    "message_body",
    "endpoint",
    "method",
    "request_headers",
    "request_body",
    "response_code",
    "response_body",
    "error_message",
    "status",
    "timestamp",
    "forwarded_at",
)

_SEARCH_COLUMNS = (
    "sender_number",
    "source_package",
    "source_app_name",
    "notification_title",
    "notification_text",
    "message_body",
    "rule_name",
)


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    # Stored in UTC so lexical ordering of the ISO text is chronological.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _to_db_value(column: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return _to_db_time(value)
    if column == "request_headers" and value is not None:
        return json.dumps(value, sort_keys=True)
    if isinstance(value, bool):
        return int(value)
    return value


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the rule and history ports."""

    def __init__(self, db_path: str, timeout: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - rules: forwarding rules, one row per rule
        - forwarding_history: audit log of inbound events and delivery attempts
        """

        with self._connect() as conn:
            # WAL lets history readers run while deliveries write their rows.
            conn.execute("PRAGMA journal_mode=WAL")
            # rules holds the user-defined configuration.
            # Fields:
            # - headers: JSON object of extra request headers
            # - package_filter: NULL means every app (notification rules only)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    pattern TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    package_filter TEXT,
                    is_regex INTEGER NOT NULL DEFAULT 0,
                    endpoint TEXT NOT NULL,
                    method TEXT NOT NULL DEFAULT 'POST',
                    headers TEXT NOT NULL DEFAULT '{}',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            # forwarding_history is denormalized on purpose: rows keep the rule
            # name and request snapshot even after the rule is edited or deleted,
            # so rule_id carries no foreign key.
            # Fields:
            # - rule_id/rule_name: NULL when no rule matched
            # - matched_rule: cached rule_id IS NOT NULL for fast filtering
            # - timestamp: event time at the source
            # - forwarded_at: when delivery was dispatched
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS forwarding_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_id INTEGER,
                    rule_name TEXT,
                    matched_rule INTEGER NOT NULL DEFAULT 0,
                    source_type TEXT NOT NULL,
                    sender_number TEXT,
                    source_package TEXT,
                    source_app_name TEXT,
                    notification_title TEXT,
                    notification_text TEXT,
                    message_body TEXT NOT NULL DEFAULT '',
                    endpoint TEXT,
                    method TEXT,
                    request_headers TEXT,
                    request_body TEXT,
                    response_code INTEGER,
                    response_body TEXT,
                    error_message TEXT,
                    status TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL,
                    forwarded_at TIMESTAMP
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_timestamp ON forwarding_history (timestamp)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_rule ON forwarding_history (rule_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_status ON forwarding_history (status)")

    # Rules

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> Rule:
        return Rule(
            id=int(row["id"]),
            name=row["name"],
            pattern=row["pattern"],
            source_type=SourceType(row["source_type"]),
            package_filter=row["package_filter"],
            is_regex=bool(row["is_regex"]),
            endpoint=row["endpoint"],
            method=row["method"],
            headers=json.loads(row["headers"] or "{}"),
            is_active=bool(row["is_active"]),
            created_at=_from_db_time(row["created_at"]),
            updated_at=_from_db_time(row["updated_at"]),
        )

    @staticmethod
    def _rule_values(rule: Rule) -> tuple:
        # package_filter only means something for notification rules.
        package_filter = rule.package_filter if rule.source_type == SourceType.NOTIFICATION else None
        return (
            rule.name,
            rule.pattern,
            rule.source_type.value,
            package_filter,
            int(rule.is_regex),
            rule.endpoint,
            rule.method,
            json.dumps(dict(rule.headers), sort_keys=True),
            int(rule.is_active),
            _to_db_time(rule.created_at),
            _to_db_time(rule.updated_at),
        )

    def insert_rule(self, rule: Rule) -> int:
        """Insert a rule and return its generated id."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO rules (
                    name, pattern, source_type, package_filter, is_regex, endpoint,
                    method, headers, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._rule_values(rule),
            )
            return int(cur.lastrowid)

    def update_rule(self, rule: Rule) -> bool:
        """Replace every column of an existing rule."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE rules SET
                    name = ?, pattern = ?, source_type = ?, package_filter = ?, is_regex = ?,
                    endpoint = ?, method = ?, headers = ?, is_active = ?, created_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (*self._rule_values(rule), rule.id),
            )
            return cur.rowcount > 0

    def delete_rule(self, rule_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
            return cur.rowcount > 0

    def delete_all_rules(self) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM rules").rowcount

    def get_rule(self, rule_id: int) -> Optional[Rule]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM rules WHERE id = ?", (rule_id,)).fetchone()
        return self._row_to_rule(row) if row else None

    def list_rules(
        self,
        source_type: Optional[SourceType] = None,
        active_only: bool = False,
    ) -> list[Rule]:
        """Return rules ordered by id, optionally only active ones of a source type."""

        clauses: list[str] = []
        params: list[Any] = []
        if source_type is not None:
            clauses.append("source_type = ?")
            params.append(source_type.value)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM rules {where} ORDER BY id", params).fetchall()
        return [self._row_to_rule(row) for row in rows]

    def set_rule_active(self, rule_id: int, is_active: bool, updated_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE rules SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(is_active), _to_db_time(updated_at), rule_id),
            )
            return cur.rowcount > 0

    # History writes

    def insert_history(self, row: dict[str, Any]) -> int:
        """Insert one history row built by the recorder."""

        columns = [column for column in _HISTORY_COLUMNS if column in row]
        placeholders = ", ".join("?" for _ in columns)
        values = [_to_db_value(column, row[column]) for column in columns]
        with self._connect() as conn:
            cur = conn.execute(
                f"INSERT INTO forwarding_history ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            return int(cur.lastrowid)

    def update_history(self, history_id: int, changes: dict[str, Any]) -> None:
        """Update selected columns of one history row in place."""

        unknown = set(changes) - set(_HISTORY_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown history columns: {sorted(unknown)}")
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        values = [_to_db_value(column, value) for column, value in changes.items()]
        with self._connect() as conn:
            conn.execute(
                f"UPDATE forwarding_history SET {assignments} WHERE id = ?",
                (*values, history_id),
            )

    # History reads

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> HistoryRecord:
        headers = row["request_headers"]
        return HistoryRecord(
            id=int(row["id"]),
            rule_id=row["rule_id"],
            rule_name=row["rule_name"],
            matched_rule=bool(row["matched_rule"]),
            source_type=SourceType(row["source_type"]),
            status=ForwardingStatus(row["status"]),
            timestamp=_from_db_time(row["timestamp"]),
            message_body=row["message_body"],
            sender_number=row["sender_number"],
            source_package=row["source_package"],
            source_app_name=row["source_app_name"],
            notification_title=row["notification_title"],
            notification_text=row["notification_text"],
            endpoint=row["endpoint"],
            method=row["method"],
            request_headers=json.loads(headers) if headers else None,
            request_body=row["request_body"],
            response_code=row["response_code"],
            response_body=row["response_body"],
            error_message=row["error_message"],
            forwarded_at=_from_db_time(row["forwarded_at"]),
        )

    @staticmethod
    def _where(history_filter: Optional[HistoryFilter]) -> tuple[str, list[Any]]:
        if history_filter is None:
            return "", []

        clauses: list[str] = []
        params: list[Any] = []
        if history_filter.search:
            term = f"%{_escape_like(history_filter.search.strip())}%"
            clauses.append(
                "(" + " OR ".join(f"{column} LIKE ? ESCAPE '\\'" for column in _SEARCH_COLUMNS) + ")"
            )
            params.extend([term] * len(_SEARCH_COLUMNS))
        if history_filter.app:
            clauses.append("(source_package = ? OR source_app_name = ?)")
            params.extend([history_filter.app, history_filter.app])
        if history_filter.matched is not None:
            clauses.append("matched_rule = ?")
            params.append(int(history_filter.matched))
        if history_filter.status is not None:
            clauses.append("status = ?")
            params.append(history_filter.status.value)
        if history_filter.source_type is not None:
            clauses.append("source_type = ?")
            params.append(history_filter.source_type.value)
        if history_filter.rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(history_filter.rule_id)

        if not clauses:
            return "", []
        return "WHERE " + " AND ".join(clauses), params

    def get_history(self, history_id: int) -> Optional[HistoryRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM forwarding_history WHERE id = ?",
                (history_id,),
            ).fetchone()
        return self._row_to_history(row) if row else None

    def list_history(
        self,
        history_filter: Optional[HistoryFilter] = None,
        page: int = 0,
        page_size: int = 50,
    ) -> list[HistoryRecord]:
        """Return one page of history rows, newest event first."""

        where, params = self._where(history_filter)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM forwarding_history {where}
                ORDER BY timestamp DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, page_size, max(page, 0) * page_size),
            ).fetchall()
        return [self._row_to_history(row) for row in rows]

    def count_history(self, history_filter: Optional[HistoryFilter] = None) -> int:
        where, params = self._where(history_filter)
        with self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM forwarding_history {where}", params).fetchone()
        return int(row["total"])

    def statistics(self, history_filter: Optional[HistoryFilter] = None) -> HistoryStatistics:
        """Aggregate counts by status, honouring the same filters as listings."""

        where, params = self._where(history_filter)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT status, matched_rule, COUNT(*) AS total
                FROM forwarding_history {where}
                GROUP BY status, matched_rule
                """,
                params,
            ).fetchall()

        by_status: dict[str, int] = {}
        matched = 0
        for row in rows:
            by_status[row["status"]] = by_status.get(row["status"], 0) + row["total"]
            if row["matched_rule"]:
                matched += row["total"]
        return HistoryStatistics(
            total=sum(by_status.values()),
            matched=matched,
            success=by_status.get(ForwardingStatus.SUCCESS.value, 0),
            failed=by_status.get(ForwardingStatus.FAILED.value, 0),
            retry=by_status.get(ForwardingStatus.RETRY.value, 0),
            no_rule_matched=by_status.get(ForwardingStatus.NO_RULE_MATCHED.value, 0),
        )

    def distinct_apps(self) -> list[AppUsage]:
        """Return notification packages seen in history, most frequent first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT source_package, MAX(source_app_name) AS app_name, COUNT(*) AS total
                FROM forwarding_history
                WHERE source_package IS NOT NULL AND source_package != ''
                GROUP BY source_package
                ORDER BY total DESC, source_package
                """
            ).fetchall()
        return [
            AppUsage(package_name=row["source_package"], app_name=row["app_name"], count=row["total"])
            for row in rows
        ]

    # History deletes

    def delete_history(self, history_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM forwarding_history WHERE id = ?", (history_id,))
            return cur.rowcount > 0

    def delete_history_by_rule(self, rule_id: int) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM forwarding_history WHERE rule_id = ?", (rule_id,)).rowcount

    def delete_all_history(self) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM forwarding_history").rowcount

    def trim_history(self, keep: int) -> int:
        """Keep the most recent rows and return the number removed."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM forwarding_history WHERE id NOT IN (
                    SELECT id FROM forwarding_history
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                )
                """,
                (max(keep, 0),),
            )
            return cur.rowcount
