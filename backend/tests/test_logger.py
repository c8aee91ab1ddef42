import json
import logging

import main  # noqa: F401  (configures logging)
from config import settings
from logger import GAME_EVENTS, log_game_event, set_request_id


def last_event():
    for handler in logging.getLogger(GAME_EVENTS).handlers:
        handler.flush()
    lines = (settings.log_dir / "game_events.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def test_game_events_are_json_lines():
    set_request_id("req-42")
    log_game_event("answer_submitted", session_code="ABC234", player_id="p1", data={"correct": True})

    event = last_event()
    assert event["event"] == "answer_submitted"
    assert event["session"] == "ABC234"
    assert event["player_id"] == "p1"
    assert event["correct"] is True
    assert event["request_id"] == "req-42"
    assert event["ts"].endswith("+00:00")


def test_optional_fields_are_left_out():
    log_game_event("stream_connected")
    event = last_event()
    assert event["event"] == "stream_connected"
    assert "session" not in event
    assert "player_id" not in event


def test_request_ids_are_generated_when_missing():
    rid = set_request_id(None)
    assert len(rid) == 12
    assert set_request_id("  ") != "  "
