"""Delivery engine: one HTTP call per matched rule with bounded retry.

Only network-level failures are retried. A response with a non-2xx status is
returned immediately as an HttpError.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from core.config import DeliveryConfig
from core.models import InboundEvent, OutgoingRequest, Rule
from core.payload import build_request
from core.ports import TransportPort

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    code: int
    body: Optional[str]


@dataclass(frozen=True)
class HttpError:
    code: int
    body: Optional[str]
    message: str


@dataclass(frozen=True)
class NetworkError:
    message: str
    attempts: int


@dataclass(frozen=True)
class UnexpectedError:
    """A per-rule dispatch raised outside the transport call."""

    message: str


DeliveryOutcome = Union[Success, HttpError, NetworkError, UnexpectedError]

RetryCallback = Callable[[int, float, Exception], None]
Sleep = Callable[[float], Awaitable[None]]


def is_success_status(code: int) -> bool:
    return 200 <= code < 300


class DeliveryEngine:
    """Builds requests for rules and sends them through a transport."""

    def __init__(
        self,
        transport: TransportPort,
        config: Optional[DeliveryConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._config = config or DeliveryConfig()
        self._sleep = sleep

    def build_request(self, event: InboundEvent, rule: Rule) -> OutgoingRequest:
        return build_request(event, rule, self._config.user_agent)

    async def deliver(self, event: InboundEvent, rule: Rule) -> DeliveryOutcome:
        """Forward one event to one rule's endpoint."""

        return await self.send(self.build_request(event, rule))

    async def send(
        self,
        request: OutgoingRequest,
        on_retry: Optional[RetryCallback] = None,
    ) -> DeliveryOutcome:
        """Send a prepared request with exponential backoff on network errors.

        on_retry is called with (next_attempt, delay, error) before each sleep.
        """

        max_attempts = max(1, self._config.max_attempts)
        delay = self._config.initial_delay_seconds
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._transport.send(request)
            except Exception as exc:  # any failure of the call itself is network-level
                last_error = exc
                if attempt == max_attempts:
                    break
                LOGGER.warning(
                    "Attempt %s/%s to %s failed (%s); retrying in %.2fs",
                    attempt,
                    max_attempts,
                    request.url,
                    exc,
                    delay,
                )
                if on_retry is not None:
                    on_retry(attempt + 1, delay, exc)
                await self._sleep(delay)
                delay *= self._config.backoff_multiplier
                continue

            if is_success_status(response.status_code):
                return Success(code=response.status_code, body=response.body)
            reason = f": {response.reason}" if response.reason else ""
            return HttpError(
                code=response.status_code,
                body=response.body,
                message=f"HTTP {response.status_code}{reason}",
            )

        return NetworkError(
            message=f"Failed after {max_attempts} attempts: {last_error}",
            attempts=max_attempts,
        )
