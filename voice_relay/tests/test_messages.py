"""Listener wire-protocol contract."""

import json

from voice_relay import messages


def test_speaker_event():
    assert json.loads(messages.encode(messages.speaker_event("Alice"))) == {
        "type": "speaker",
        "speaker": "Alice",
    }


def test_speaker_cleared_is_null():
    assert messages.encode(messages.speaker_event(None)) == '{"type":"speaker","speaker":null}'


def test_user_count_is_integer():
    assert messages.user_count_event(2.0) == {"type": "user_count", "count": 2}


def test_status_snapshot():
    assert messages.status_event(None) == {"type": "status", "speaker": None}


def test_unicode_names_survive():
    event = json.loads(messages.encode(messages.speaker_event("Zoë 🎙")))
    assert event["speaker"] == "Zoë 🎙"
