import asyncio
import json
from datetime import timedelta

import multiplayer
from models import utcnow


def parse_events(body):
    """Split an SSE body into (event, data) pairs"""
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def new_game(client, seed_questions, count=3):
    seed_questions(count)
    game = client.post("/api/multiplayer/create", json={"nickname": "Host"}).json()
    return game


def test_format_sse():
    frame = multiplayer.format_sse("gameState", {"gameStatus": "waiting"})
    assert frame == 'event: gameState\ndata: {"gameStatus": "waiting"}\n\n'


def test_unknown_game_streams_an_error(client):
    res = client.get("/api/multiplayer/NOPE42/stream")
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    assert parse_events(res.text) == [("error", {"message": "Game not found"})]


def test_finished_game_streams_final_results(client, seed_questions, update_session, load_session):
    game = new_game(client, seed_questions)
    update_session(game["sessionId"], game_status="finished", is_completed=True)

    res = client.get(f"/api/multiplayer/{game['gameCode'].lower()}/stream", params={"playerId": game["playerId"]})
    assert res.headers["cache-control"] == "no-cache, no-transform"
    assert res.headers["x-accel-buffering"] == "no"

    events = parse_events(res.text)
    assert [name for name, _ in events] == ["gameState", "gameFinished"]
    assert events[0][1]["gameStatus"] == "finished"
    assert events[1][1]["players"][0]["nickname"] == "Host"

    # Closed by the server, so the player still counts as connected
    assert len(client.get(f"/api/multiplayer/{game['gameCode']}/state").json()["players"]) == 1


def test_poll_only_sends_changed_state(client, seed_questions):
    game = new_game(client, seed_questions)

    first = multiplayer.poll_game(game["gameCode"])
    assert [name for name, _ in first.events] == ["gameState"]
    assert first.done is False
    assert first.delay == 0.5

    second = multiplayer.poll_game(game["gameCode"], first.state_key)
    assert second.events == []
    assert second.state_key == first.state_key

    client.post("/api/multiplayer/join", json={"gameCode": game["gameCode"], "nickname": "Late"})
    third = multiplayer.poll_game(game["gameCode"], first.state_key)
    assert len(third.events[0][1]["players"]) == 2


def test_poll_advances_an_expired_question(client, seed_questions, update_session, load_session):
    game = new_game(client, seed_questions)
    client.post(f"/api/multiplayer/{game['gameCode']}/start", json={"playerId": game["playerId"]})
    update_session(game["sessionId"], question_started_at=utcnow() - timedelta(seconds=60))

    tick = multiplayer.poll_game(game["gameCode"])
    assert tick.events == []
    assert tick.delay == multiplayer.TIMEOUT_REPOLL_SECONDS
    assert load_session(game["sessionId"]).current_question == 1

    tick = multiplayer.poll_game(game["gameCode"])
    assert tick.events[0][1]["currentQuestion"] == 1


def test_poll_at_a_given_time(client, seed_questions, load_session):
    game = new_game(client, seed_questions)
    client.post(f"/api/multiplayer/{game['gameCode']}/start", json={"playerId": game["playerId"]})

    later = utcnow() + timedelta(seconds=34)
    multiplayer.poll_game(game["gameCode"], now=later)
    assert load_session(game["sessionId"]).current_question == 1


def test_disconnected_players_drop_out_of_the_snapshot(client, seed_questions):
    game = new_game(client, seed_questions)
    guest = client.post("/api/multiplayer/join", json={"gameCode": game["gameCode"], "nickname": "Guest"}).json()

    multiplayer.set_player_connected(guest["playerId"], False)
    state = client.get(f"/api/multiplayer/{game['gameCode']}/state").json()
    assert [p["nickname"] for p in state["players"]] == ["Host"]
    assert state["totalPlayers"] == 1


class DisconnectingRequest:
    """Stands in for a request whose client leaves after `polls` polls"""

    def __init__(self, polls):
        self.polls = polls
        self.checks = 0

    async def is_disconnected(self):
        self.checks += 1
        return self.checks > self.polls


def test_client_disconnect_marks_the_player_gone(client, seed_questions):
    game = new_game(client, seed_questions)
    guest = client.post("/api/multiplayer/join", json={"gameCode": game["gameCode"], "nickname": "Guest"}).json()

    async def consume():
        stream = multiplayer.game_event_stream(DisconnectingRequest(1), game["gameCode"], guest["playerId"])
        return [frame async for frame in stream]

    frames = asyncio.run(consume())
    assert len(frames) == 1
    assert frames[0].startswith("event: gameState\n")

    state = client.get(f"/api/multiplayer/{game['gameCode']}/state").json()
    assert [p["nickname"] for p in state["players"]] == ["Host"]
