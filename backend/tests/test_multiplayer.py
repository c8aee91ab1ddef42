from datetime import timedelta

import pytest
from fastapi import HTTPException

import db
import multiplayer
from models import utcnow
from tables import Player, PlayerAnswer


def create(client, mode="classic", nickname="Host"):
    res = client.post("/api/multiplayer/create", json={"nickname": nickname, "gameMode": mode})
    assert res.status_code == 200, res.text
    return res.json()


def join(client, code, nickname):
    return client.post("/api/multiplayer/join", json={"gameCode": code, "nickname": nickname})


def state(client, code):
    res = client.get(f"/api/multiplayer/{code}/state")
    assert res.status_code == 200, res.text
    return res.json()


@pytest.fixture()
def lobby(client, seed_questions):
    """A classic game with a host and one extra player"""
    seed_questions(12)
    game = create(client)
    guest = join(client, game["gameCode"], "Guest").json()
    return {"code": game["gameCode"], "host": game["playerId"], "guest": guest["playerId"], "game": game}


def start(client, lobby):
    res = client.post(f"/api/multiplayer/{lobby['code']}/start", json={"playerId": lobby["host"]})
    assert res.status_code == 200, res.text


def answer(client, code, player_id, selected=0):
    return client.post(f"/api/multiplayer/{code}/answer", json={"playerId": player_id, "selectedAnswer": selected})


# --- Lobby ---

def test_create_game(client, seed_questions):
    seed_questions(12)
    game = create(client, nickname="Prof")
    assert len(game["gameCode"]) == 6
    assert game["config"]["timePerQuestion"] == 30
    assert game["config"]["totalQuestions"] == 10
    assert game["config"]["bossHp"] is None
    assert game["config"]["isCooperative"] is False

    snapshot = state(client, game["gameCode"])
    assert snapshot["gameStatus"] == "waiting"
    assert snapshot["question"] is None
    assert [p["nickname"] for p in snapshot["players"]] == ["Prof"]
    assert snapshot["players"][0]["isHost"] is True
    assert "bossHp" not in snapshot
    assert "bossEnraged" not in snapshot


def test_create_needs_questions(client):
    assert client.post("/api/multiplayer/create", json={}).status_code == 404


def test_join_normalizes_the_code(client, seed_questions):
    seed_questions(5)
    game = create(client)
    res = join(client, f"  {game['gameCode'].lower()} ", "  Zed ")
    assert res.status_code == 200
    assert res.json()["gameCode"] == game["gameCode"]
    assert [p["nickname"] for p in state(client, game["gameCode"])["players"]] == ["Host", "Zed"]


def test_join_errors(client, lobby, seed_questions):
    assert join(client, "", "X").status_code == 400
    assert join(client, "ZZZZZZ", "X").status_code == 404

    res = join(client, lobby["code"], "guest")
    assert res.status_code == 400
    assert res.json()["detail"] == "Nickname already taken in this game"

    solo_game = client.post("/api/game/start", json={"gameMode": "classic"}).json()
    res = join(client, solo_game["gameCode"], "X")
    assert res.status_code == 400
    assert res.json()["detail"] == "This is not a multiplayer game"

    start(client, lobby)
    res = join(client, lobby["code"], "Late")
    assert res.status_code == 400
    assert res.json()["detail"] == "Game has already started"


def test_disconnected_nickname_can_be_reused(client, lobby):
    multiplayer.set_player_connected(lobby["guest"], False)
    assert join(client, lobby["code"], "Guest").status_code == 200


def test_game_is_full(client, lobby, load_session):
    session = load_session(game_code=lobby["code"])
    with db.SessionLocal() as s:
        s.add_all([Player(game_session_id=session.id, nickname=f"P{i}") for i in range(28)])
        s.commit()

    res = join(client, lobby["code"], "OneTooMany")
    assert res.status_code == 400
    assert res.json()["detail"] == "Game is full"


def test_join_racing_the_start_is_refused(client, lobby):
    with db.SessionLocal() as other:
        # Loaded while the lobby is still open
        assert multiplayer.get_game(other, lobby["code"]).game_status == "waiting"
        start(client, lobby)

        with pytest.raises(HTTPException) as exc:
            multiplayer.join_game(other, None, lobby["code"], "Late")
    assert exc.value.status_code == 400
    assert exc.value.detail == "Game has already started"
    assert sorted(p["nickname"] for p in state(client, lobby["code"])["players"]) == ["Guest", "Host"]


# --- Host gating ---

def test_only_the_host_starts(client, lobby):
    res = client.post(f"/api/multiplayer/{lobby['code']}/start", json={"playerId": lobby["guest"]})
    assert res.status_code == 403
    assert client.post("/api/multiplayer/NOPE42/start", json={"playerId": lobby["host"]}).status_code == 404

    start(client, lobby)
    snapshot = state(client, lobby["code"])
    assert snapshot["gameStatus"] == "playing"
    assert snapshot["currentQuestion"] == 0
    assert snapshot["questionStartedAt"].endswith("Z")
    assert snapshot["question"]["optionA"] == "Right"
    assert "correctAnswer" not in snapshot["question"]

    res = client.post(f"/api/multiplayer/{lobby['code']}/start", json={"playerId": lobby["host"]})
    assert res.status_code == 400


def test_disconnected_host_cannot_start(client, lobby):
    multiplayer.set_player_connected(lobby["host"], False)
    res = client.post(f"/api/multiplayer/{lobby['code']}/start", json={"playerId": lobby["host"]})
    assert res.status_code == 403


def test_only_the_host_advances(client, lobby):
    res = client.post(f"/api/multiplayer/{lobby['code']}/next", json={"playerId": lobby["host"]})
    assert res.status_code == 400

    start(client, lobby)
    res = client.post(f"/api/multiplayer/{lobby['code']}/next", json={"playerId": lobby["guest"]})
    assert res.status_code == 403
    assert res.json()["detail"] == "Only the host can advance the game"

    answer(client, lobby["code"], lobby["guest"])
    res = client.post(f"/api/multiplayer/{lobby['code']}/next", json={"playerId": lobby["host"]})
    assert res.json() == {"success": True, "currentQuestion": 1, "gameFinished": False}

    snapshot = state(client, lobby["code"])
    assert snapshot["currentQuestion"] == 1
    assert snapshot["answeredCount"] == 0
    assert not any(p["hasAnswered"] for p in snapshot["players"])


def test_advancing_past_the_last_question_finishes(client, lobby):
    start(client, lobby)
    for expected in range(1, 10):
        body = client.post(f"/api/multiplayer/{lobby['code']}/next", json={"playerId": lobby["host"]}).json()
        assert body["currentQuestion"] == expected

    body = client.post(f"/api/multiplayer/{lobby['code']}/next", json={"playerId": lobby["host"]}).json()
    assert body == {"success": True, "gameFinished": True}

    snapshot = state(client, lobby["code"])
    assert snapshot["gameStatus"] == "finished"
    assert snapshot["results"]["gameMode"] == "classic"
    assert len(snapshot["results"]["players"]) == 2
    assert "bossDefeated" not in snapshot["results"]

    res = client.post(f"/api/multiplayer/{lobby['code']}/next", json={"playerId": lobby["host"]})
    assert res.status_code == 400


# --- Answers ---

def test_answer_scoring_and_double_answers(client, lobby):
    assert answer(client, lobby["code"], lobby["host"]).status_code == 400  # not started
    start(client, lobby)

    res = answer(client, lobby["code"], lobby["guest"], selected=0)
    assert res.status_code == 200
    body = res.json()
    assert body["isCorrect"] is True
    assert body["pointsEarned"] == 100
    assert body["newStreak"] == 1
    assert "bossHp" not in body

    res = answer(client, lobby["code"], lobby["guest"], selected=1)
    assert res.status_code == 400
    assert res.json()["detail"] == "Already answered this question"

    body = answer(client, lobby["code"], lobby["host"], selected=2).json()
    assert body["isCorrect"] is False
    assert body["pointsEarned"] == 0

    snapshot = state(client, lobby["code"])
    assert snapshot["answeredCount"] == 2
    # Highest score first
    assert [p["nickname"] for p in snapshot["players"]] == ["Guest", "Host"]
    assert snapshot["players"][0]["score"] == 100

    with db.SessionLocal() as s:
        assert s.query(PlayerAnswer).filter_by(player_id=lobby["guest"]).count() == 1


def test_answer_validation(client, lobby):
    start(client, lobby)
    res = client.post(f"/api/multiplayer/{lobby['code']}/answer", json={"playerId": lobby["guest"]})
    assert res.status_code == 400
    assert answer(client, "NOPE42", lobby["guest"]).status_code == 404
    assert answer(client, lobby["code"], "ghost").status_code == 404


def test_players_from_other_games_are_rejected(client, lobby):
    other = create(client, nickname="Other")
    start(client, lobby)
    res = answer(client, lobby["code"], other["playerId"])
    assert res.status_code == 404


def test_streaks_across_questions(client, lobby):
    start(client, lobby)
    points = []
    for _ in range(3):
        points.append(answer(client, lobby["code"], lobby["guest"]).json()["pointsEarned"])
        client.post(f"/api/multiplayer/{lobby['code']}/next", json={"playerId": lobby["host"]})
    assert points == [100, 100, 200]


def test_rush_speed_bonus(client, seed_questions):
    seed_questions(20)
    game = create(client, mode="rush")
    client.post(f"/api/multiplayer/{game['gameCode']}/start", json={"playerId": game["playerId"]})
    body = answer(client, game["gameCode"], game["playerId"]).json()
    # 15 s questions; answered within the first second or two
    assert body["pointsEarned"] in (100 + 225, 100 + 210)


def test_multiplayer_leaves_account_stats_alone(client, register, seed_questions):
    seed_questions(5)
    register(client, username="hosty")
    game = create(client)
    client.post(f"/api/multiplayer/{game['gameCode']}/start", json={"playerId": game["playerId"]})
    answer(client, game["gameCode"], game["playerId"])

    me = client.get("/api/auth/me").json()
    assert me["totalScore"] == 0
    assert me["gamesPlayed"] == 0


# --- Advancing races ---

def test_stale_advance_is_ignored(client, lobby, load_session):
    start(client, lobby)
    with db.SessionLocal() as s:
        session = multiplayer.get_game(s, lobby["code"])
        assert multiplayer.advance_question(s, session, 0) is False
    with db.SessionLocal() as s:
        session = multiplayer.get_game(s, lobby["code"])
        # A second advance computed from question 0 loses the compare-and-set
        assert multiplayer.advance_question(s, session, 0) is None

    assert load_session(game_code=lobby["code"]).current_question == 1


def test_timeout_auto_advance(client, lobby, load_session, update_session):
    start(client, lobby)
    session = load_session(game_code=lobby["code"])

    with db.SessionLocal() as s:
        assert multiplayer.advance_if_expired(s, multiplayer.get_game(s, lobby["code"])) is False

    # 30 s question + 3 s grace
    update_session(session.id, question_started_at=utcnow() - timedelta(seconds=34))
    answer(client, lobby["code"], lobby["guest"])
    with db.SessionLocal() as s:
        assert multiplayer.advance_if_expired(s, multiplayer.get_game(s, lobby["code"])) is True

    snapshot = state(client, lobby["code"])
    assert snapshot["currentQuestion"] == 1
    assert snapshot["answeredCount"] == 0


def test_state_endpoint_auto_advances(client, lobby, load_session, update_session):
    start(client, lobby)
    session = load_session(game_code=lobby["code"])
    update_session(session.id, question_started_at=utcnow() - timedelta(seconds=40))
    assert state(client, lobby["code"])["currentQuestion"] == 1


def test_timeout_on_last_question_finishes(client, seed_questions, load_session, update_session):
    seed_questions(1)
    game = create(client)
    client.post(f"/api/multiplayer/{game['gameCode']}/start", json={"playerId": game["playerId"]})
    update_session(game["sessionId"], question_started_at=utcnow() - timedelta(seconds=40))

    with db.SessionLocal() as s:
        assert multiplayer.advance_if_expired(s, multiplayer.get_game(s, game["gameCode"])) is True
    finished = load_session(game["sessionId"])
    assert finished.game_status == "finished"
    assert finished.is_completed is True


def test_answer_after_the_question_moved_on(client, lobby):
    start(client, lobby)
    with db.SessionLocal() as s:
        session = multiplayer.get_game(s, lobby["code"])
        stale_index = session.current_question
        multiplayer.advance_question(s, session, stale_index)
    # The guest now answers question 1, which is still open
    assert answer(client, lobby["code"], lobby["guest"]).status_code == 200


# --- Cooperative boss battle ---

@pytest.fixture()
def boss_game(client, register, seed_questions):
    seed_questions(20)
    register(client, username="raider")
    game = create(client, mode="boss_battle")
    client.post(f"/api/multiplayer/{game['gameCode']}/start", json={"playerId": game["playerId"]})
    return game


def test_boss_takes_damage_and_heals(make_client, boss_game):
    assert boss_game["config"]["bossHp"] == 1000
    assert boss_game["config"]["isCooperative"] is True

    body = answer(make_client(), boss_game["gameCode"], boss_game["playerId"]).json()
    assert body["bossDamage"] == 60
    assert body["bossHp"] == 940
    assert body["bossDefeated"] is False
    assert body["bossEnraged"] is False
    assert body["gemsAwarded"] == 0


def test_wrong_answers_heal_the_boss(client, boss_game, update_session):
    update_session(boss_game["sessionId"], boss_hp=900)
    body = answer(client, boss_game["gameCode"], boss_game["playerId"], selected=3).json()
    assert body["bossHeal"] == 20
    assert body["bossHp"] == 920

    snapshot = state(client, boss_game["gameCode"])
    assert snapshot["bossHp"] == 920
    assert snapshot["bossMaxHp"] == 1000
    assert snapshot["isCooperative"] is True


def test_healing_is_capped(client, boss_game):
    body = answer(client, boss_game["gameCode"], boss_game["playerId"], selected=3).json()
    assert body["bossHp"] == 1000


def test_defeating_the_boss_ends_the_game(client, boss_game, update_session, load_session):
    update_session(boss_game["sessionId"], boss_hp=50)
    body = answer(client, boss_game["gameCode"], boss_game["playerId"]).json()
    assert body["bossDefeated"] is True
    assert body["bossHp"] == 0
    assert body["gemsAwarded"] == 5

    session = load_session(boss_game["sessionId"])
    assert session.game_status == "finished"
    assert client.get("/api/auth/me").json()["gems"] == 5

    results = state(client, boss_game["gameCode"])["results"]
    assert results["bossDefeated"] is True
    assert results["questionsAnswered"] == 1
