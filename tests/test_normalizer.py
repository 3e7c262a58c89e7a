from __future__ import annotations

from datetime import datetime, timezone

import pytest

from core.models import SourceType
from core.normalizer import (
    INVALID_NOTIFICATION_REASON,
    INVALID_SMS_REASON,
    INVALID_TIMESTAMP_REASON,
    InvalidEventError,
    mask_sender,
    normalize_extras,
    normalize_notification,
    normalize_sms,
)


def test_normalize_sms_builds_event() -> None:
    when = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    event = normalize_sms("Your OTP is 4821", "+15550001111", when)
    assert event.source_type == SourceType.SMS
    assert event.content == "Your OTP is 4821"
    assert event.sender_number == "+15550001111"
    assert event.package_name is None
    assert event.timestamp == when


@pytest.mark.parametrize("body, sender", [("", "+1555"), ("  ", "+1555"), ("hello", ""), (None, "+1555")])
def test_normalize_sms_rejects_blank_fields(body, sender) -> None:
    with pytest.raises(InvalidEventError) as excinfo:
        normalize_sms(body, sender, 1_700_000_000_000)
    assert excinfo.value.reason == INVALID_SMS_REASON
    assert excinfo.value.event.source_type == SourceType.SMS


def test_epoch_millis_become_aware_datetimes() -> None:
    event = normalize_sms("hello", "+1555", 1_704_067_200_000)
    assert event.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_naive_datetime_is_treated_as_utc() -> None:
    event = normalize_sms("hello", "+1555", datetime(2024, 1, 1))
    assert event.timestamp.tzinfo is not None


@pytest.mark.parametrize(
    "title, text, expected",
    [
        ("Bob", "new message", "Bob: new message"),
        ("Bob", "", "Bob"),
        ("", "new message", "new message"),
        ("  ", "new message", "new message"),
    ],
)
def test_notification_content(title: str, text: str, expected: str) -> None:
    event = normalize_notification("com.whatsapp", "WhatsApp", title, text, 0)
    assert event.content == expected
    assert event.package_name == "com.whatsapp"
    assert event.app_label == "WhatsApp"


def test_notification_with_blank_title_and_text_is_rejected() -> None:
    with pytest.raises(InvalidEventError) as excinfo:
        normalize_notification("com.whatsapp", "WhatsApp", " ", "", 0)
    assert excinfo.value.reason == INVALID_NOTIFICATION_REASON
    assert excinfo.value.event.package_name == "com.whatsapp"


def test_app_label_defaults_to_package() -> None:
    event = normalize_notification("com.whatsapp", None, "Bob", "hi", 0)
    assert event.app_label == "com.whatsapp"


def test_normalize_extras_narrows_values() -> None:
    extras = normalize_extras(
        {
            "android.title": "Bob",
            "count": 3,
            "ratio": 0.5,
            "silent": True,
            "people": ["alice", None, "bob"],
            "nested": {"b": 1, "a": 2},
            "missing": None,
            "nan": float("nan"),
            "raw": b"bytes",
            "other": object,
        }
    )
    assert extras["android.title"] == "Bob"
    assert extras["count"] == 3
    assert extras["ratio"] == 0.5
    assert extras["silent"] is True
    assert extras["people"] == ("alice", "bob")
    assert extras["nested"] == '{"a": 2, "b": 1}'
    assert extras["raw"] == "bytes"
    assert isinstance(extras["other"], str)
    assert "missing" not in extras
    assert "nan" not in extras


def test_mask_sender() -> None:
    assert mask_sender("+15550001111") == "+1***11"
    assert mask_sender("1234") == "***"
    assert mask_sender(None) == "***"


def test_numeric_raw_fields_are_read_as_text() -> None:
    sms = normalize_sms(4821, 15550001111, 0)
    assert sms.content == "4821"
    assert sms.sender_number == "15550001111"

    notification = normalize_notification("com.bank", None, "Code", 4821, 0)
    assert notification.content == "Code: 4821"
    assert notification.text == "4821"


@pytest.mark.parametrize("when", ["2024-01-01T00:00:00+00:00", "1704067200000"])
def test_text_timestamps_are_accepted(when: str) -> None:
    event = normalize_sms("hello", "+1555", when)
    assert event.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("when", ["yesterday", None, [1, 2]])
def test_unreadable_timestamp_is_rejected(when) -> None:
    with pytest.raises(InvalidEventError) as excinfo:
        normalize_sms("hello", "+1555", when)
    assert excinfo.value.reason == INVALID_TIMESTAMP_REASON
    assert excinfo.value.event.timestamp.tzinfo is not None

    with pytest.raises(InvalidEventError) as excinfo:
        normalize_notification("com.x", "X", "Bob", "hi", when)
    assert excinfo.value.reason == INVALID_TIMESTAMP_REASON


def test_mask_sender_accepts_numbers() -> None:
    assert mask_sender(15550001111) == "15***11"
