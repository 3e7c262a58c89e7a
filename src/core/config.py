"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DeliveryConfig:
    """Retry and request settings for the delivery engine."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    timeout_seconds: float = 30.0
    user_agent: str = "HookRelay/1.0"


@dataclass(frozen=True)
class HistoryConfig:
    """History retention settings."""

    # Keep the most recent N rows at startup; 0 disables trimming.
    retention: int = 1000
