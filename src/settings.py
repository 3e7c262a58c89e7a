"""Static configuration for hookrelay.

All user-editable settings (database, delivery retry, history retention,
logging) live in a single JSON file for quick edits without touching Python.
Rules themselves live in the database and are managed through the CLI.
"""

import json
import os

from dotenv import load_dotenv

from core.config import DeliveryConfig, HistoryConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Secrets referenced by the redacting log formatter and the config path
# override may come from a local .env file.
load_dotenv()

CONFIG_PATH = os.getenv("HOOKRELAY_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database (rules and history).
DB_PATH = _resolve_path(_CONFIG.get("database", {}).get("path", "hookrelay.db"))

# Retry constants are configuration, not protocol:
# - max_attempts: total tries per delivery, including the first
# - initial_delay_seconds: wait before the first retry
# - backoff_multiplier: factor applied to the wait after every retry
_delivery = _CONFIG.get("delivery", {})
DELIVERY = DeliveryConfig(
    max_attempts=int(_delivery.get("max_attempts", 3)),
    initial_delay_seconds=float(_delivery.get("initial_delay_seconds", 1.0)),
    backoff_multiplier=float(_delivery.get("backoff_multiplier", 2.0)),
    timeout_seconds=float(_delivery.get("timeout_seconds", 30.0)),
    user_agent=str(_delivery.get("user_agent", "HookRelay/1.0")),
)

# History retention applied on startup; 0 keeps everything.
_history = _CONFIG.get("history", {})
HISTORY = HistoryConfig(retention=int(_history.get("retention", 1000)))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
