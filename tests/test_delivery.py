from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Callable

import httpx

from adapters.http_transport import HttpxTransport
from core.config import DeliveryConfig
from core.delivery import DeliveryEngine, HttpError, NetworkError, Success
from core.models import InboundEvent, Rule, SourceType


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _rule(method: str = "POST") -> Rule:
    return Rule(
        id=1,
        name="hook",
        pattern="OTP",
        source_type=SourceType.SMS,
        endpoint="https://example.com/hook",
        method=method,
        headers={"Authorization": "Bearer secret"},
    )


def _event() -> InboundEvent:
    return InboundEvent(
        source_type=SourceType.SMS,
        content="Your OTP is 4821",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        sender_number="+15550001111",
    )


def _deliver(
    handler: Callable[[httpx.Request], httpx.Response],
    rule: Rule,
    sleep: RecordingSleep,
    config: "DeliveryConfig | None" = None,
):
    async def _run():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with client:
            engine = DeliveryEngine(HttpxTransport(client=client), config or DeliveryConfig(), sleep=sleep)
            return await engine.deliver(_event(), rule)

    return asyncio.run(_run())


def test_success_posts_json_body_with_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="ok")

    sleep = RecordingSleep()
    outcome = _deliver(handler, _rule(), sleep)

    assert outcome == Success(code=200, body="ok")
    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Source-Type"] == "SMS"
    assert request.headers["User-Agent"] == "HookRelay/1.0"
    body = json.loads(request.content)
    assert body["messageBody"] == "Your OTP is 4821"
    assert body["senderNumber"] == "+15550001111"
    assert sleep.delays == []


def test_get_sends_query_parameters() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    outcome = _deliver(handler, _rule(method="GET"), RecordingSleep())

    assert isinstance(outcome, Success)
    request = seen[0]
    assert request.method == "GET"
    assert request.content == b""
    assert request.url.params["senderNumber"] == "+15550001111"
    assert request.url.params["sourceType"] == "SMS"


def test_http_500_is_terminal_after_one_attempt() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, text="boom")

    sleep = RecordingSleep()
    outcome = _deliver(handler, _rule(), sleep)

    assert isinstance(outcome, HttpError)
    assert outcome.code == 500
    assert outcome.body == "boom"
    assert outcome.message.startswith("HTTP 500")
    assert len(calls) == 1
    assert sleep.delays == []


def test_http_404_is_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404)

    outcome = _deliver(handler, _rule(), RecordingSleep())
    assert isinstance(outcome, HttpError)
    assert len(calls) == 1


def test_connection_errors_retry_three_times_with_doubling_delay() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    sleep = RecordingSleep()
    outcome = _deliver(handler, _rule(), sleep)

    assert isinstance(outcome, NetworkError)
    assert outcome.attempts == 3
    assert "3 attempts" in outcome.message
    assert "connection refused" in outcome.message
    assert len(calls) == 3
    assert sleep.delays == [1.0, 2.0]


def test_recovers_after_transient_timeout() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(201, text="created")

    sleep = RecordingSleep()
    outcome = _deliver(handler, _rule(), sleep)

    assert outcome == Success(code=201, body="created")
    assert len(calls) == 2
    assert sleep.delays == [1.0]


def test_retry_constants_come_from_config() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    sleep = RecordingSleep()
    config = DeliveryConfig(max_attempts=4, initial_delay_seconds=0.5, backoff_multiplier=3.0)
    outcome = _deliver(handler, _rule(), sleep, config)

    assert isinstance(outcome, NetworkError)
    assert outcome.attempts == 4
    assert sleep.delays == [0.5, 1.5, 4.5]
