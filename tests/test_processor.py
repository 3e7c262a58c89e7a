from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from adapters.sqlite_storage import SQLiteStorage
from core.config import DeliveryConfig
from core.delivery import DeliveryEngine, HttpError, NetworkError, Success, UnexpectedError
from core.history import HistoryRecorder
from core.models import ForwardingStatus, HistoryFilter, OutgoingRequest, Rule, SourceType
from core.normalizer import INVALID_SMS_REASON, INVALID_TIMESTAMP_REASON
from core.ports import TransportError, TransportResponse
from core.processor import NO_ACTIVE_RULES_REASON, NO_MATCH_REASON, ForwardingProcessor
from core.rule_store import RuleStore

WHEN = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Answers by URL; a list of responses is consumed one per call."""

    def __init__(self, responses: dict[str, Any]) -> None:
        self._responses = responses
        self.requests: list[OutgoingRequest] = []

    async def send(self, request: OutgoingRequest) -> TransportResponse:
        self.requests.append(request)
        response = self._responses[request.url]
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RecordingStorage(SQLiteStorage):
    """SQLite storage that remembers every status written to history."""

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path)
        self.statuses: dict[int, list[str]] = {}

    def insert_history(self, row: dict[str, Any]) -> int:
        history_id = super().insert_history(row)
        self.statuses[history_id] = [row["status"]]
        return history_id

    def update_history(self, history_id: int, changes: dict[str, Any]) -> None:
        super().update_history(history_id, changes)
        if "status" in changes:
            self.statuses[history_id].append(changes["status"])


class BrokenRequestEngine(DeliveryEngine):
    """Fails while preparing the request for one named rule."""

    def build_request(self, event, rule):
        if rule.name == "broken":
            raise RuntimeError("template exploded")
        return super().build_request(event, rule)


@pytest.fixture
def storage(tmp_path: Path) -> RecordingStorage:
    storage = RecordingStorage(str(tmp_path / "hookrelay.db"))
    storage.init_db()
    return storage


def _processor(storage: SQLiteStorage, transport: FakeTransport, engine_cls=DeliveryEngine) -> ForwardingProcessor:
    engine = engine_cls(transport, DeliveryConfig(), sleep=RecordingSleep())
    return ForwardingProcessor(RuleStore(storage), HistoryRecorder(storage), engine)


def _create(storage: SQLiteStorage, **values) -> int:
    rule = Rule(
        name=values.pop("name", "hook"),
        pattern=values.pop("pattern", "OTP"),
        source_type=values.pop("source_type", SourceType.SMS),
        endpoint=values.pop("endpoint", "https://example.com/a"),
        **values,
    )
    return RuleStore(storage).create(rule)


def test_matching_sms_is_forwarded_and_recorded(storage: RecordingStorage) -> None:
    rule_id = _create(storage, headers={"Authorization": "Bearer x"})
    transport = FakeTransport({"https://example.com/a": TransportResponse(200, "ok")})

    results = asyncio.run(_processor(storage, transport).process_sms("Your OTP is 4821", "+15550001111", WHEN))

    assert len(results) == 1
    assert results[0].outcome == Success(code=200, body="ok")
    assert results[0].status == ForwardingStatus.SUCCESS

    body = json.loads(transport.requests[0].body)
    assert body["messageBody"] == "Your OTP is 4821"
    assert body["senderNumber"] == "+15550001111"
    assert body["sourceType"] == "SMS"

    record = storage.get_history(results[0].history_id)
    assert record.status == ForwardingStatus.SUCCESS
    assert record.rule_id == rule_id
    assert record.rule_name == "hook"
    assert record.response_code == 200
    assert record.request_headers["Authorization"] == "Bearer x"
    assert record.request_body == transport.requests[0].body
    assert storage.statuses[record.id] == ["RECEIVED", "SUCCESS"]


def test_package_filter_mismatch_records_no_rule_matched(storage: RecordingStorage) -> None:
    _create(
        storage,
        pattern="message",
        source_type=SourceType.NOTIFICATION,
        package_filter="com.whatsapp",
    )
    transport = FakeTransport({})

    results = asyncio.run(
        _processor(storage, transport).process_notification(
            "com.telegram", "Telegram", "Bob", "new message", WHEN
        )
    )

    assert results == []
    assert transport.requests == []
    [record] = storage.list_history()
    assert record.status == ForwardingStatus.NO_RULE_MATCHED
    assert record.matched_rule is False
    assert record.rule_id is None
    assert record.error_message == NO_MATCH_REASON
    assert record.source_package == "com.telegram"
    assert record.message_body == "Bob: new message"


def test_no_active_rules_is_recorded(storage: RecordingStorage) -> None:
    _create(storage, is_active=False)

    results = asyncio.run(_processor(storage, FakeTransport({})).process_sms("Your OTP", "+1555", WHEN))

    assert results == []
    [record] = storage.list_history()
    assert record.status == ForwardingStatus.NO_RULE_MATCHED
    assert record.error_message == NO_ACTIVE_RULES_REASON


def test_invalid_sms_is_recorded_and_dropped(storage: RecordingStorage) -> None:
    _create(storage)
    transport = FakeTransport({})

    results = asyncio.run(_processor(storage, transport).process_sms("   ", "+1555", WHEN))

    assert results == []
    assert transport.requests == []
    [record] = storage.list_history()
    assert record.status == ForwardingStatus.NO_RULE_MATCHED
    assert record.error_message == INVALID_SMS_REASON


def test_each_matched_rule_gets_its_own_row(storage: RecordingStorage) -> None:
    ok_id = _create(storage, name="ok", endpoint="https://example.com/a")
    bad_id = _create(storage, name="bad", endpoint="https://example.com/b")
    transport = FakeTransport(
        {
            "https://example.com/a": TransportResponse(200, "ok"),
            "https://example.com/b": TransportResponse(500, "boom", "Internal Server Error"),
        }
    )

    results = asyncio.run(_processor(storage, transport).process_sms("OTP 1234", "+1555", WHEN))

    assert [result.rule.id for result in results] == [ok_id, bad_id]
    assert storage.count_history() == 2

    ok_row = storage.list_history(HistoryFilter(rule_id=ok_id))[0]
    bad_row = storage.list_history(HistoryFilter(rule_id=bad_id))[0]
    assert ok_row.status == ForwardingStatus.SUCCESS
    assert bad_row.status == ForwardingStatus.FAILED
    assert bad_row.response_code == 500
    assert bad_row.error_message == "HTTP 500: Internal Server Error"
    assert isinstance(results[1].outcome, HttpError)


def test_network_retries_pass_through_retry_status(storage: RecordingStorage) -> None:
    _create(storage)
    transport = FakeTransport(
        {
            "https://example.com/a": [
                TransportError("connection refused"),
                TransportError("connection refused"),
                TransportResponse(201, "created"),
            ]
        }
    )

    [result] = asyncio.run(_processor(storage, transport).process_sms("OTP 1234", "+1555", WHEN))

    assert result.status == ForwardingStatus.SUCCESS
    assert len(transport.requests) == 3
    assert storage.statuses[result.history_id] == ["RECEIVED", "RETRY", "RETRY", "SUCCESS"]
    assert storage.get_history(result.history_id).error_message is None


def test_exhausted_retries_fail_the_row(storage: RecordingStorage) -> None:
    _create(storage)
    transport = FakeTransport({"https://example.com/a": TransportError("unreachable")})

    [result] = asyncio.run(_processor(storage, transport).process_sms("OTP 1234", "+1555", WHEN))

    assert isinstance(result.outcome, NetworkError)
    assert result.status == ForwardingStatus.FAILED
    record = storage.get_history(result.history_id)
    assert record.status == ForwardingStatus.FAILED
    assert record.error_message == "Failed after 3 attempts: unreachable"
    assert record.response_code is None


def test_unexpected_error_is_isolated_to_its_rule(storage: RecordingStorage) -> None:
    broken_id = _create(storage, name="broken", endpoint="https://example.com/broken")
    ok_id = _create(storage, name="ok", endpoint="https://example.com/a")
    transport = FakeTransport({"https://example.com/a": TransportResponse(200, "ok")})

    results = asyncio.run(
        _processor(storage, transport, BrokenRequestEngine).process_sms("OTP 1234", "+1555", WHEN)
    )

    by_rule = {result.rule.id: result for result in results}
    assert by_rule[ok_id].status == ForwardingStatus.SUCCESS
    assert by_rule[broken_id].status == ForwardingStatus.FAILED
    assert isinstance(by_rule[broken_id].outcome, UnexpectedError)

    broken_row = storage.get_history(by_rule[broken_id].history_id)
    assert broken_row.status == ForwardingStatus.FAILED
    assert "template exploded" in broken_row.error_message
    assert [request.url for request in transport.requests] == ["https://example.com/a"]


def test_rule_edits_do_not_rewrite_history(storage: RecordingStorage) -> None:
    rule_id = _create(storage, name="original")
    transport = FakeTransport({"https://example.com/a": TransportResponse(200, "ok")})
    [result] = asyncio.run(_processor(storage, transport).process_sms("OTP 1234", "+1555", WHEN))

    RuleStore(storage).delete(rule_id)

    record = storage.get_history(result.history_id)
    assert record.rule_id == rule_id
    assert record.rule_name == "original"


def test_numeric_sender_is_forwarded_as_text(storage: RecordingStorage) -> None:
    _create(storage)
    transport = FakeTransport({"https://example.com/a": TransportResponse(200, "ok")})

    [result] = asyncio.run(_processor(storage, transport).process_sms("OTP 1", 15550001111, WHEN))

    assert result.status == ForwardingStatus.SUCCESS
    assert json.loads(transport.requests[0].body)["senderNumber"] == "15550001111"
    assert storage.get_history(result.history_id).sender_number == "15550001111"


def test_numeric_notification_text_is_matched(storage: RecordingStorage) -> None:
    _create(storage, pattern="4821", source_type=SourceType.NOTIFICATION)
    transport = FakeTransport({"https://example.com/a": TransportResponse(200, "ok")})

    [result] = asyncio.run(
        _processor(storage, transport).process_notification("com.x", "X", "Code", 4821, WHEN)
    )

    assert result.status == ForwardingStatus.SUCCESS
    assert storage.get_history(result.history_id).message_body == "Code: 4821"


def test_unreadable_timestamp_is_recorded_and_dropped(storage: RecordingStorage) -> None:
    _create(storage)
    transport = FakeTransport({})

    results = asyncio.run(_processor(storage, transport).process_sms("OTP 1", "+1555", "not a time"))

    assert results == []
    assert transport.requests == []
    [record] = storage.list_history()
    assert record.status == ForwardingStatus.NO_RULE_MATCHED
    assert record.error_message == INVALID_TIMESTAMP_REASON
    assert record.message_body == "OTP 1"


class GatedTransport:
    """Holds every request until the expected number are in flight at once."""

    def __init__(self, expected: int) -> None:
        self._expected = expected
        self._gate = asyncio.Event()
        self.in_flight = 0
        self.peak = 0

    async def send(self, request: OutgoingRequest) -> TransportResponse:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        if self.in_flight >= self._expected:
            self._gate.set()
        await asyncio.wait_for(self._gate.wait(), timeout=1.0)
        self.in_flight -= 1
        return TransportResponse(200, "ok")


def test_matched_rules_are_delivered_concurrently(storage: RecordingStorage) -> None:
    for index in range(3):
        _create(storage, name=f"hook{index}", endpoint=f"https://example.com/{index}")
    transport = GatedTransport(expected=3)
    engine = DeliveryEngine(transport, DeliveryConfig(max_attempts=1), sleep=RecordingSleep())
    processor = ForwardingProcessor(RuleStore(storage), HistoryRecorder(storage), engine)

    results = asyncio.run(processor.process_sms("OTP 1234", "+1555", WHEN))

    assert transport.peak == 3
    assert transport.in_flight == 0
    assert [result.status for result in results] == [ForwardingStatus.SUCCESS] * 3
    assert storage.count_history(HistoryFilter(status=ForwardingStatus.SUCCESS)) == 3
