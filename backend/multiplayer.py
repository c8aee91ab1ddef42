"""
Multiplayer games: lobby, host-gated phase changes, transactional answers
and the server-sent-event poll loop.

A game moves waiting -> playing -> finished. The host starts and advances it;
the stream also advances a question that has been open longer than its time
limit plus a short buffer, and a defeated boss finishes a boss battle early.
Every advance is a compare-and-set on (status, current_question), so a host
click racing a timeout, or two streams timing out together, step exactly once.
"""

from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import anyio
from fastapi import HTTPException, Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from db import SessionLocal
from game_config import (
    AUTO_ADVANCE_BUFFER_SECONDS, MAX_PLAYERS_PER_GAME, MULTIPLAYER_BOSS,
    boss_heal_amount, calculate_multiplayer_boss_damage,
    calculate_multiplayer_points, is_boss_enraged, resolve_mode,
)
from logger import get_logger, log_game_event
from models import (
    FinalPlayerResult, GameFinished, GameState, ModeConfigView, PlayerState,
    isoformat, question_view, utcnow,
)
from solo import select_questions, unique_game_code
from tables import GameSession, Player, PlayerAnswer, Question, User, UserUpgrade

logger = get_logger("ChemQuest.multiplayer")

TIMEOUT_REPOLL_SECONDS = 0.1
ERROR_RETRY_SECONDS = 1.0


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def get_game(db: Session, code: Optional[str]) -> GameSession:
    session = db.query(GameSession).filter(GameSession.game_code == normalize_code(code)).first()
    if session is None:
        raise HTTPException(status_code=404, detail="Game not found")
    return session


def connected_players(db: Session, session: GameSession) -> list[Player]:
    """Connected players, highest score first"""
    return (
        db.query(Player)
        .filter(Player.game_session_id == session.id, Player.is_connected.is_(True))
        .order_by(Player.score.desc(), Player.joined_at)
        .all()
    )


def _require_host(db: Session, session: GameSession, player_id: Optional[str], action: str) -> Player:
    host = next((p for p in connected_players(db, session) if p.id == player_id), None)
    if host is None or not host.is_host:
        raise HTTPException(status_code=403, detail=f"Only the host can {action} the game")
    return host


def _config_view(session: GameSession) -> ModeConfigView:
    return ModeConfigView(
        timePerQuestion=session.time_per_question,
        totalQuestions=session.total_questions,
        bossHp=session.boss_max_hp,
        bossMaxHp=session.boss_max_hp,
        isCooperative=session.is_cooperative,
    )


# --- Lobby ---

def create_game(db: Session, user: Optional[User], nickname: Optional[str], game_mode: Optional[str]) -> dict:
    mode, config = resolve_mode(game_mode, multiplayer=True)
    nickname = (nickname or "").strip()[:30] or "Host"

    questions = select_questions(db, config.questions)
    if not questions:
        raise HTTPException(status_code=404, detail="No questions available")

    is_boss_battle = config.boss_hp is not None
    session = GameSession(
        game_code=unique_game_code(db),
        game_mode=mode,
        is_multiplayer=True,
        total_questions=len(questions),
        time_per_question=config.time_per_question,
        question_ids=[q.id for q in questions],
        game_status='waiting',
        boss_hp=config.boss_hp,
        boss_max_hp=config.boss_hp,
        is_cooperative=is_boss_battle,
    )
    db.add(session)
    db.flush()

    host = Player(game_session_id=session.id, nickname=nickname, is_host=True, user_id=user.id if user else None)
    db.add(host)
    db.flush()
    session.host_id = host.id
    db.commit()

    logger.info(f"🎮 Multiplayer game created: {session.game_code} mode={mode} host={nickname}")
    log_game_event("game_created", session_code=session.game_code, player_id=host.id, data={
        "mode": mode,
        "question_count": len(questions),
        "cooperative": is_boss_battle,
    })

    return {
        "success": True,
        "gameCode": session.game_code,
        "sessionId": session.id,
        "playerId": host.id,
        "gameMode": mode,
        "config": _config_view(session).model_dump(),
    }


def join_game(db: Session, user: Optional[User], game_code: Optional[str], nickname: Optional[str]) -> dict:
    code = normalize_code(game_code)
    if not code:
        raise HTTPException(status_code=400, detail="Game code is required")
    nickname = (nickname or "").strip()[:30] or "Player"

    session = get_game(db, code)
    if not session.is_multiplayer:
        raise HTTPException(status_code=400, detail="This is not a multiplayer game")
    if session.game_status != 'waiting':
        raise HTTPException(status_code=400, detail="Game has already started")

    # Lock the lobby row so the capacity and nickname checks see every earlier join
    locked = db.execute(
        update(GameSession)
        .where(GameSession.id == session.id, GameSession.game_status == 'waiting')
        .values(game_status='waiting')
        .execution_options(synchronize_session=False)
    )
    if locked.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=400, detail="Game has already started")

    players = connected_players(db, session)
    if len(players) >= MAX_PLAYERS_PER_GAME:
        db.rollback()
        raise HTTPException(status_code=400, detail="Game is full")
    if any(p.nickname.lower() == nickname.lower() for p in players):
        db.rollback()
        raise HTTPException(status_code=400, detail="Nickname already taken in this game")

    player = Player(game_session_id=session.id, nickname=nickname, is_host=False, user_id=user.id if user else None)
    db.add(player)
    db.commit()

    logger.info(f"👤 Player joined: {nickname} -> {session.game_code} ({len(players) + 1} players)")
    log_game_event("player_joined", session_code=session.game_code, player_id=player.id, data={
        "nickname": nickname,
        "player_count": len(players) + 1,
    })

    return {
        "success": True,
        "gameCode": session.game_code,
        "sessionId": session.id,
        "playerId": player.id,
        "gameMode": session.game_mode,
        "config": _config_view(session).model_dump(),
    }


def _reset_answers(db: Session, session_id: str) -> None:
    db.execute(
        update(Player)
        .where(Player.game_session_id == session_id)
        .values(current_answer=None, answered_at=None)
        .execution_options(synchronize_session=False)
    )


def start_game(db: Session, code: str, player_id: Optional[str]) -> dict:
    session = get_game(db, code)
    _require_host(db, session, player_id, "start")
    if session.game_status != 'waiting':
        raise HTTPException(status_code=400, detail="Game has already started")

    players = connected_players(db, session)
    if not players:
        raise HTTPException(status_code=400, detail="Need at least 1 player to start")

    result = db.execute(
        update(GameSession)
        .where(GameSession.id == session.id, GameSession.game_status == 'waiting')
        .values(game_status='playing', current_question=0, question_started_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=400, detail="Game has already started")
    _reset_answers(db, session.id)
    db.commit()

    logger.info(f"🚀 Game started: {session.game_code}, {session.total_questions} questions, {len(players)} players")
    log_game_event("game_started", session_code=session.game_code, player_id=player_id, data={
        "question_count": session.total_questions,
        "player_count": len(players),
    })
    return {"success": True}


# --- Advancing ---

def advance_question(db: Session, session: GameSession, expected_index: int, reason: str = "host") -> Optional[bool]:
    """Move past `expected_index` if nobody else already has.

    Returns None when the compare-and-set lost, otherwise whether the game
    finished.
    """
    next_index = expected_index + 1
    finished = next_index >= session.total_questions
    now = utcnow()

    if finished:
        values = {"game_status": 'finished', "is_completed": True, "completed_at": now}
    else:
        values = {"current_question": next_index, "question_started_at": now}

    result = db.execute(
        update(GameSession)
        .where(
            GameSession.id == session.id,
            GameSession.game_status == 'playing',
            GameSession.current_question == expected_index,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return None

    if not finished:
        _reset_answers(db, session.id)
    db.commit()

    if finished:
        logger.info(f"🏁 Game finished: {session.game_code} ({reason})")
        log_game_event("game_finished", session_code=session.game_code, data={
            "reason": reason, "questions_played": next_index,
        })
    else:
        logger.info(f"⏭️ Next question: {session.game_code}, Q{next_index + 1}/{session.total_questions} ({reason})")
        log_game_event("question_advanced", session_code=session.game_code, data={
            "question_index": next_index, "reason": reason,
        })
    return finished


def next_question(db: Session, code: str, player_id: Optional[str]) -> dict:
    session = get_game(db, code)
    _require_host(db, session, player_id, "advance")
    if session.game_status != 'playing':
        raise HTTPException(status_code=400, detail="Game is not in progress")

    finished = advance_question(db, session, session.current_question)
    if finished is None:
        raise HTTPException(status_code=409, detail="Question already advanced")
    if finished:
        return {"success": True, "gameFinished": True}
    return {"success": True, "currentQuestion": session.current_question + 1, "gameFinished": False}


def _elapsed_seconds(session: GameSession, now: Optional[datetime] = None) -> Optional[float]:
    if session.question_started_at is None:
        return None
    return ((now or utcnow()) - session.question_started_at).total_seconds()


def advance_if_expired(db: Session, session: GameSession, now: Optional[datetime] = None) -> bool:
    """Auto-advance a question whose time ran out; True when it had"""
    if session.game_status != 'playing':
        return False
    elapsed = _elapsed_seconds(session, now)
    if elapsed is None or elapsed < session.time_per_question + AUTO_ADVANCE_BUFFER_SECONDS:
        return False
    advance_question(db, session, session.current_question, reason="timeout")
    return True


# --- Answers ---

def submit_answer(db: Session, code: str, player_id: Optional[str], selected_answer: Optional[int]) -> dict:
    if not player_id or selected_answer is None:
        raise HTTPException(status_code=400, detail="Missing required fields")

    session = get_game(db, code)
    if session.game_status != 'playing':
        raise HTTPException(status_code=400, detail="Game is not in progress")

    index = session.current_question
    question = None
    if index < len(session.question_ids):
        question = db.get(Question, session.question_ids[index])
    if question is None:
        raise HTTPException(status_code=404, detail="Question not found")

    now = utcnow()
    elapsed = _elapsed_seconds(session, now)
    time_spent = math.floor(elapsed) if elapsed is not None else session.time_per_question
    is_boss_battle = session.boss_max_hp is not None
    enraged = is_boss_battle and elapsed is not None and is_boss_enraged(elapsed)
    is_correct = selected_answer == question.correct_answer

    # Lock the session row on the question being answered; fails if it moved on
    opened = db.execute(
        update(GameSession)
        .where(
            GameSession.id == session.id,
            GameSession.game_status == 'playing',
            GameSession.current_question == index,
        )
        .values(current_question=index)
        .execution_options(synchronize_session=False)
    )
    if opened.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=400, detail="Question is no longer open")

    player = (
        db.query(Player)
        .filter(Player.id == player_id)
        .populate_existing()
        .first()
    )
    if player is None or player.game_session_id != session.id:
        db.rollback()
        raise HTTPException(status_code=404, detail="Player not found in this game")
    if player.current_answer is not None:
        db.rollback()
        raise HTTPException(status_code=400, detail="Already answered this question")

    new_streak = player.streak + 1 if is_correct else 0
    points = calculate_multiplayer_points(is_correct, new_streak, session.game_mode, time_spent)

    player.current_answer = selected_answer
    player.answered_at = now
    player.score += points
    player.streak = new_streak
    player.max_streak = max(player.max_streak, new_streak)
    if is_correct:
        player.correct_answers += 1
    else:
        player.incorrect_answers += 1

    db.add(PlayerAnswer(
        game_session_id=session.id,
        player_id=player.id,
        question_id=question.id,
        question_index=index,
        selected_answer=selected_answer,
        is_correct=is_correct,
        time_spent=time_spent,
        points_earned=points,
    ))

    boss = {}
    if is_boss_battle:
        boss = _apply_boss_hit(db, session, player, is_correct, new_streak, enraged, index, now)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Already answered this question")

    log_game_event("answer_submitted", session_code=session.game_code, player_id=player.id, data={
        "question_index": index,
        "choice": selected_answer,
        "correct": is_correct,
        "points": points,
        "time_spent": time_spent,
        **({"boss_hp": boss["bossHp"]} if boss else {}),
    })
    if boss.get("bossDefeated"):
        logger.info(f"🐉 Boss defeated in {session.game_code} on Q{index + 1}, {boss['gemsAwarded']} gems each")
        log_game_event("game_finished", session_code=session.game_code, data={
            "reason": "boss_defeated", "questions_played": index + 1,
        })

    return {
        "success": True,
        "isCorrect": is_correct,
        "correctAnswer": question.correct_answer,
        "pointsEarned": points,
        "newStreak": new_streak,
        **boss,
    }


def _apply_boss_hit(
    db: Session,
    session: GameSession,
    player: Player,
    is_correct: bool,
    new_streak: int,
    enraged: bool,
    index: int,
    now: datetime,
) -> dict:
    """Damage or heal the shared boss inside the answer transaction"""
    # The session row is already locked, so this read is current
    db.refresh(session)

    damage = heal = 0
    if is_correct:
        level = 0
        if player.user_id:
            upgrade = db.query(UserUpgrade).filter_by(user_id=player.user_id, upgrade_id='boss_damage').first()
            level = upgrade.level if upgrade else 0
        damage = calculate_multiplayer_boss_damage(new_streak, level)
        boss_hp = max(0, session.boss_hp - damage)
    else:
        heal = boss_heal_amount(enraged)
        boss_hp = min(session.boss_max_hp, session.boss_hp + heal)

    defeated = boss_hp <= 0
    values: dict = {"boss_hp": boss_hp}
    if defeated:
        values.update(game_status='finished', is_completed=True, completed_at=now)
    db.execute(
        update(GameSession)
        .where(GameSession.id == session.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    gems = 0
    if defeated:
        gems = MULTIPLAYER_BOSS['gemsPerQuestion'] * (index + 1)
        user_ids = {
            user_id for (user_id,) in
            db.query(Player.user_id).filter(Player.game_session_id == session.id, Player.user_id.isnot(None))
        }
        if user_ids:
            db.execute(
                update(User)
                .where(User.id.in_(user_ids))
                .values(gems=User.gems + gems)
                .execution_options(synchronize_session=False)
            )

    return {
        "bossDamage": damage,
        "bossHeal": heal,
        "bossDefeated": defeated,
        "bossHp": boss_hp,
        "bossEnraged": enraged,
        "gemsAwarded": gems,
    }


# --- Snapshots ---

def build_game_state(db: Session, session: GameSession, now: Optional[datetime] = None) -> GameState:
    players = connected_players(db, session)

    question = None
    if session.game_status == 'playing' and session.current_question < len(session.question_ids):
        row = db.get(Question, session.question_ids[session.current_question])
        if row is not None:
            question = question_view(row)

    state = GameState(
        gameStatus=session.game_status,
        currentQuestion=session.current_question,
        totalQuestions=session.total_questions,
        gameMode=session.game_mode,
        players=[
            PlayerState(
                id=p.id,
                nickname=p.nickname,
                score=p.score,
                streak=p.streak,
                isHost=p.is_host,
                hasAnswered=p.current_answer is not None,
            )
            for p in players
        ],
        question=question,
        questionStartedAt=isoformat(session.question_started_at),
        answeredCount=sum(1 for p in players if p.current_answer is not None),
        totalPlayers=len(players),
    )

    if session.boss_max_hp is not None:
        elapsed = _elapsed_seconds(session, now)
        state.bossHp = session.boss_hp
        state.bossMaxHp = session.boss_max_hp
        state.bossEnraged = elapsed is not None and is_boss_enraged(elapsed)
        state.bossDefeated = session.boss_hp is not None and session.boss_hp <= 0
        state.isCooperative = session.is_cooperative
    return state


def build_final_results(db: Session, session: GameSession) -> GameFinished:
    results = GameFinished(
        gameMode=session.game_mode,
        players=[
            FinalPlayerResult(
                id=p.id,
                nickname=p.nickname,
                score=p.score,
                correctAnswers=p.correct_answers,
                maxStreak=p.max_streak,
                isHost=p.is_host,
            )
            for p in connected_players(db, session)
        ],
    )
    if session.boss_max_hp is not None:
        results.bossDefeated = session.boss_hp is not None and session.boss_hp <= 0
        results.bossHp = session.boss_hp
        results.bossMaxHp = session.boss_max_hp
        results.questionsAnswered = session.current_question + 1
    return results


def current_state(db: Session, code: str) -> dict:
    """One-shot snapshot for clients that cannot hold a stream open"""
    session = get_game(db, code)
    if advance_if_expired(db, session):
        db.refresh(session)
    state = build_game_state(db, session).to_event()
    if session.game_status == 'finished':
        state["results"] = build_final_results(db, session).to_event()
    return state


# --- Event stream ---

def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@dataclass
class StreamTick:
    events: list[tuple[str, dict]] = field(default_factory=list)
    state_key: Optional[str] = None
    done: bool = False
    delay: float = 0.5


def poll_game(code: str, last_state: Optional[str] = None, now: Optional[datetime] = None) -> StreamTick:
    """One stream poll: auto-advance, diff the snapshot, report what to send"""
    tick = StreamTick(state_key=last_state, delay=settings.stream_poll_interval)

    with SessionLocal() as db:
        session = (
            db.query(GameSession)
            .filter(GameSession.game_code == normalize_code(code))
            .first()
        )
        if session is None:
            tick.events.append(("error", {"message": "Game not found"}))
            tick.done = True
            return tick

        if advance_if_expired(db, session, now):
            tick.delay = TIMEOUT_REPOLL_SECONDS
            return tick

        state = build_game_state(db, session, now).to_event()
        state_key = json.dumps(state, sort_keys=True)
        if state_key != last_state:
            tick.state_key = state_key
            tick.events.append(("gameState", state))

        if session.game_status == 'finished':
            tick.events.append(("gameFinished", build_final_results(db, session).to_event()))
            tick.done = True

    return tick


def set_player_connected(player_id: str, connected: bool) -> None:
    with SessionLocal() as db:
        db.execute(
            update(Player)
            .where(Player.id == player_id)
            .values(is_connected=connected)
            .execution_options(synchronize_session=False)
        )
        db.commit()


async def game_event_stream(request: Request, code: str, player_id: Optional[str] = None):
    """Async generator of SSE frames for one connected client"""
    code = normalize_code(code)
    if player_id:
        await run_in_threadpool(set_player_connected, player_id, True)
    log_game_event("stream_connected", session_code=code, player_id=player_id)

    last_state = None
    closed_by_server = False
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                tick = await run_in_threadpool(poll_game, code, last_state)
            except SQLAlchemyError as e:
                logger.error(f"❌ Stream poll error for {code}: {type(e).__name__}: {e}")
                await asyncio.sleep(ERROR_RETRY_SECONDS)
                continue

            last_state = tick.state_key
            for event, data in tick.events:
                yield format_sse(event, data)
            if tick.done:
                closed_by_server = True
                break
            await asyncio.sleep(tick.delay)
    finally:
        if player_id and not closed_by_server:
            # Must run even when the response task is being cancelled
            with anyio.CancelScope(shield=True):
                await run_in_threadpool(set_player_connected, player_id, False)
        log_game_event("stream_disconnected", session_code=code, player_id=player_id, data={
            "closed_by_server": closed_by_server,
        })
