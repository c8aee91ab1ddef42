"""
Solo play: question selection, server-side scoring, the in-game power-up
wallet, run completion and the persistent upgrade shop.

Answers and power-up uses first take the GameSession row lock and re-read
the row, then apply a compare-and-set UPDATE keyed on the question index they
were computed from. A double-clicked answer applies once, and a purchase that
commits meanwhile is kept.
"""

from __future__ import annotations

import random
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from game_config import (
    INITIAL_COINS, MULTIPLAYER_BOSS, POWER_UPS, SOLO_BOSS, TOWER, UPGRADES,
    calculate_solo_boss_damage, calculate_solo_reward, calculate_tower_gems,
    get_upgrade_cost, resolve_mode, upgrade_effect,
)
from logger import get_logger, log_game_event
from models import (
    ModeConfigView, generate_game_code, question_view, user_summary, utcnow,
)
from tables import (
    GameSession, LeaderboardEntry, PlayerAnswer, Question, User, UserProgress,
    UserUpgrade,
)

logger = get_logger("ChemQuest.solo")

MAX_CODE_ATTEMPTS = 10


def load_upgrades(db: Session, user_id: Optional[str]) -> dict[str, int]:
    """upgradeId -> level for a user (empty for guests)"""
    if not user_id:
        return {}
    rows = db.query(UserUpgrade).filter(UserUpgrade.user_id == user_id).all()
    return {row.upgrade_id: row.level for row in rows}


def unique_game_code(db: Session) -> str:
    code = generate_game_code()
    for _ in range(MAX_CODE_ATTEMPTS):
        if not db.query(GameSession.id).filter(GameSession.game_code == code).first():
            break
        code = generate_game_code()
    return code


def select_questions(
    db: Session,
    count: int,
    question_set_id: Optional[str] = None,
    subject: Optional[str] = None,
) -> list[Question]:
    """Random questions from a set (None = default bank), optionally by subject"""
    query = db.query(Question).filter(Question.question_set_id == question_set_id)
    if subject:
        query = query.filter(Question.subject == subject)
    pool = query.all()
    return random.sample(pool, min(count, len(pool)))


def _get_solo_session(db: Session, session_id: Optional[str]) -> GameSession:
    if not session_id:
        raise HTTPException(status_code=400, detail="Missing session ID")
    session = db.get(GameSession, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if session.is_multiplayer:
        raise HTTPException(status_code=400, detail="This is a multiplayer game")
    return session


def _lock_running(db: Session, session: GameSession) -> None:
    """Take the row's write lock, then re-read it; 400 once the run is over.

    Wallet and inventory values are computed from the refreshed row, so a
    purchase that committed in between is never overwritten.
    """
    result = db.execute(
        update(GameSession)
        .where(GameSession.id == session.id, GameSession.game_status == 'playing')
        .values(game_status='playing')
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=400, detail="Game is already finished")
    db.refresh(session)


def _advance(db: Session, session: GameSession, from_index: int, values: dict) -> None:
    """Apply `values` only if the session still sits on `from_index`"""
    result = db.execute(
        update(GameSession)
        .where(
            GameSession.id == session.id,
            GameSession.current_question == from_index,
            GameSession.game_status == 'playing',
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=409, detail="Question already answered")


# --- Runs ---

def start_game(
    db: Session,
    user: Optional[User],
    game_mode: Optional[str],
    question_set_id: Optional[str] = None,
    subject: Optional[str] = None,
) -> dict:
    mode, config = resolve_mode(game_mode)
    questions = select_questions(db, config.questions, question_set_id, subject)
    if not questions:
        raise HTTPException(status_code=404, detail="No questions found for this selection")

    upgrades = load_upgrades(db, user.id if user else None)
    time_per_question = config.time_per_question + int(upgrade_effect('time_bonus', upgrades.get('time_bonus', 0)))

    session = GameSession(
        game_code=unique_game_code(db),
        game_mode=mode,
        is_multiplayer=False,
        total_questions=len(questions),
        time_per_question=time_per_question,
        question_ids=[q.id for q in questions],
        current_question=0,
        game_status='playing',
        question_started_at=utcnow(),
        coins=INITIAL_COINS,
        lives=config.lives,
        power_ups={},
        boss_hp=config.boss_hp,
        boss_max_hp=config.boss_hp,
        current_floor=0,
        user_id=user.id if user else None,
        question_set_id=question_set_id,
    )
    db.add(session)
    db.commit()

    logger.info(f"🎮 Solo game started: {session.game_code} mode={mode} questions={len(questions)}")
    log_game_event("solo_started", session_code=session.game_code, data={
        "mode": mode,
        "question_count": len(questions),
        "user_id": session.user_id,
        "question_set_id": question_set_id,
    })

    user_info = None
    if user:
        user_info = {**user_summary(user).model_dump(), "upgrades": upgrades}

    return {
        "sessionId": session.id,
        "gameCode": session.game_code,
        "gameMode": mode,
        "config": ModeConfigView(
            timePerQuestion=time_per_question,
            totalQuestions=len(questions),
            lives=config.lives,
            bossHp=config.boss_hp,
            bossMaxHp=config.boss_hp,
        ).model_dump(),
        "coins": session.coins,
        "user": user_info,
        "questions": [question_view(q).model_dump() for q in questions],
    }


def submit_answer(
    db: Session,
    session_id: Optional[str],
    question_id: Optional[str],
    selected_answer: Optional[int],
    time_spent: Optional[float],
) -> dict:
    if not session_id or not question_id:
        raise HTTPException(status_code=400, detail="Missing required fields")

    session = _get_solo_session(db, session_id)
    if question_id not in session.question_ids:
        raise HTTPException(status_code=400, detail="Question not part of this session")

    question = db.get(Question, question_id)
    if question is None:
        raise HTTPException(status_code=404, detail="Question not found")

    _lock_running(db, session)

    index = session.question_ids.index(question_id)
    if index < session.current_question:
        db.rollback()
        raise HTTPException(status_code=409, detail="Question already answered")
    if index > session.current_question:
        db.rollback()
        raise HTTPException(status_code=400, detail="Answer the current question first")

    timed_out = selected_answer is None or selected_answer < 0
    is_correct = not timed_out and selected_answer == question.correct_answer

    upgrades = load_upgrades(db, session.user_id)
    spent = 0 if session.time_frozen else max(0.0, float(time_spent or 0))
    time_remaining = max(0.0, session.time_per_question - spent)

    reward = calculate_solo_reward(
        is_correct,
        session.streak,
        session.game_mode,
        time_remaining,
        double_points=session.double_points,
        streak_boost=upgrade_effect('streak_bonus', upgrades.get('streak_bonus', 0)),
        coin_boost=upgrade_effect('coin_multiplier', upgrades.get('coin_multiplier', 0)),
    )
    coins_earned = reward.coins + int(upgrade_effect('passive_income', upgrades.get('passive_income', 0)))
    new_streak = session.streak + 1 if is_correct else 0

    lives = session.lives
    if lives is not None and not is_correct:
        lives = max(0, lives - 1)

    boss_damage = 0
    boss_hp = session.boss_hp
    if boss_hp is not None:
        boss_damage = calculate_solo_boss_damage(is_correct, new_streak, upgrades.get('boss_damage', 0))
        boss_hp = max(0, boss_hp - boss_damage)

    floor = session.current_floor
    if is_correct and session.game_mode == 'tower_climb':
        floor += 1

    next_index = index + 1
    game_over = (
        next_index >= session.total_questions
        or (lives is not None and lives <= 0)
        or (boss_hp is not None and boss_hp <= 0)
    )

    _advance(db, session, index, {
        "current_question": next_index,
        "question_started_at": utcnow(),
        "score": session.score + reward.points,
        "streak": new_streak,
        "max_streak": max(session.max_streak, new_streak),
        "correct_answers": session.correct_answers + (1 if is_correct else 0),
        "incorrect_answers": session.incorrect_answers + (0 if is_correct else 1),
        "coins": session.coins + coins_earned,
        "coins_earned": session.coins_earned + coins_earned,
        "lives": lives,
        "boss_hp": boss_hp,
        "current_floor": floor,
        "double_points": session.double_points and not is_correct,
        "time_frozen": False,
        "game_status": 'finished' if game_over else 'playing',
    })
    db.add(PlayerAnswer(
        game_session_id=session.id,
        question_id=question.id,
        question_index=index,
        selected_answer=-1 if timed_out else selected_answer,
        is_correct=is_correct,
        time_spent=int(spent),
        points_earned=reward.points,
    ))
    db.commit()

    log_game_event("solo_answer", session_code=session.game_code, data={
        "question_index": index,
        "correct": is_correct,
        "timed_out": timed_out,
        "points": reward.points,
        "coins": coins_earned,
        "streak": new_streak,
    })

    return {
        "isCorrect": is_correct,
        "correctAnswer": question.correct_answer,  # safe to reveal after answering
        "explanation": question.explanation,
        "pointsEarned": reward.points,
        "speedBonus": reward.speed_bonus,
        "coinsEarned": coins_earned,
        "coins": session.coins + coins_earned,
        "streak": new_streak,
        "livesRemaining": lives,
        "bossDamage": boss_damage if boss_hp is not None else None,
        "bossHp": boss_hp,
        "bossDefeated": boss_hp is not None and boss_hp <= 0,
        "floor": floor,
        "gameOver": game_over,
    }


# --- Power-ups ---

def _power_up(power_up_id: Optional[str]):
    if power_up_id not in POWER_UPS:
        raise HTTPException(status_code=400, detail="Invalid power-up")
    return POWER_UPS[power_up_id]


def buy_power_up(db: Session, session_id: Optional[str], power_up_id: Optional[str]) -> dict:
    power_up = _power_up(power_up_id)
    session = _get_solo_session(db, session_id)
    if session.game_status != 'playing':
        raise HTTPException(status_code=400, detail="Game is already finished")

    result = db.execute(
        update(GameSession)
        .where(GameSession.id == session.id, GameSession.coins >= power_up.cost)
        .values(coins=GameSession.coins - power_up.cost)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=400, detail="Insufficient coins")

    # The debit holds the write lock, so this read-modify-write is serialized.
    # JSON columns only notice reassignment.
    db.refresh(session)
    owned = dict(session.power_ups or {})
    owned[power_up.id] = owned.get(power_up.id, 0) + 1
    session.power_ups = owned
    db.commit()

    log_game_event("powerup_bought", session_code=session.game_code, data={
        "power_up": power_up.id, "cost": power_up.cost,
    })
    return {"success": True, "coins": session.coins, "powerUps": owned}


def use_power_up(db: Session, session_id: Optional[str], power_up_id: Optional[str]) -> dict:
    power_up = _power_up(power_up_id)
    session = _get_solo_session(db, session_id)
    _lock_running(db, session)

    owned = dict(session.power_ups or {})
    if owned.get(power_up.id, 0) <= 0:
        db.rollback()
        raise HTTPException(status_code=400, detail="You don't own this power-up")
    owned[power_up.id] -= 1

    index = session.current_question
    response: dict = {"success": True, "powerUpId": power_up.id}
    values: dict = {"power_ups": owned}

    if power_up.id == 'timeFreeze':
        values["time_frozen"] = True
    elif power_up.id == 'doublePoints':
        values["double_points"] = True
    elif power_up.id == 'fiftyFifty':
        question = db.get(Question, session.question_ids[index])
        wrong = [i for i in range(4) if i != question.correct_answer]
        response["hiddenOptions"] = sorted(random.sample(wrong, 2))
    elif power_up.id == 'skip':
        next_index = index + 1
        finished = next_index >= session.total_questions
        values.update({
            "current_question": next_index,
            "question_started_at": utcnow(),
            "time_frozen": False,
            "game_status": 'finished' if finished else 'playing',
        })
        response["currentQuestion"] = next_index
        response["gameOver"] = finished

    _advance(db, session, index, values)
    db.commit()

    log_game_event("powerup_used", session_code=session.game_code, data={
        "power_up": power_up.id, "question_index": index,
    })
    response["powerUps"] = owned
    return response


# --- Completion ---

def _record_progress(db: Session, user: User, session: GameSession, time_taken: int) -> dict:
    """Per-mode best runs; returns the tower/boss summary fields"""
    summary: dict = {}
    if session.game_mode not in ('tower_climb', 'boss_battle'):
        return summary

    progress = db.query(UserProgress).filter_by(user_id=user.id, mode=session.game_mode).first()
    if progress is None:
        progress = UserProgress(user_id=user.id, mode=session.game_mode, highest_floor=0, total_runs=0)
        db.add(progress)
    progress.total_runs += 1

    if session.game_mode == 'tower_climb':
        previous = progress.highest_floor
        new_high = session.current_floor > previous
        if new_high:
            progress.highest_floor = session.current_floor
            progress.best_time = time_taken
        summary.update(newHighFloor=new_high, previousHighFloor=previous)
    else:
        # highest_floor doubles as the "bosses defeated" counter
        if (session.boss_hp or 0) <= 0:
            progress.highest_floor += 1
            if progress.best_time is None or time_taken < progress.best_time:
                progress.best_time = time_taken
    return summary


def finish_game(db: Session, user: Optional[User], session_id: Optional[str]) -> dict:
    session = _get_solo_session(db, session_id)
    if session.is_completed:
        raise HTTPException(status_code=409, detail="Game already finished")
    if user and session.user_id and session.user_id != user.id:
        raise HTTPException(status_code=403, detail="This game belongs to another player")

    now = utcnow()
    result = db.execute(
        update(GameSession)
        .where(GameSession.id == session.id, GameSession.is_completed.is_(False))
        .values(
            is_completed=True,
            completed_at=now,
            game_status='finished',
            user_id=user.id if user else session.user_id,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=409, detail="Game already finished")

    answered = session.correct_answers + session.incorrect_answers
    accuracy = session.correct_answers / answered if answered else 0.0
    time_taken = round((now - session.started_at).total_seconds())
    is_tower = session.game_mode == 'tower_climb'

    gems_earned, milestones = calculate_tower_gems(session.current_floor) if is_tower else (0, [])
    extra: dict = {}

    if user:
        db.execute(
            update(User)
            .where(User.id == user.id)
            .values(
                total_coins=User.total_coins + session.coins_earned,
                lifetime_earnings=User.lifetime_earnings + session.coins_earned,
                total_score=User.total_score + session.score,
                games_played=User.games_played + 1,
                total_correct=User.total_correct + session.correct_answers,
                total_incorrect=User.total_incorrect + session.incorrect_answers,
                gems=User.gems + gems_earned,
            )
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(User)
            .where(User.id == user.id, User.best_streak < session.max_streak)
            .values(best_streak=session.max_streak)
            .execution_options(synchronize_session=False)
        )
        extra = _record_progress(db, user, session, time_taken)
        db.add(LeaderboardEntry(
            user_id=user.id,
            question_set_id=session.question_set_id,
            game_mode=session.game_mode,
            score=session.score,
            accuracy=accuracy,
            max_streak=session.max_streak,
            time_taken=time_taken,
        ))
    db.commit()

    logger.info(f"🏁 Solo game finished: {session.game_code} score={session.score} user={user.id if user else '-'}")
    log_game_event("solo_finished", session_code=session.game_code, data={
        "score": session.score,
        "accuracy": round(accuracy, 3),
        "time_taken": time_taken,
        "coins_earned": session.coins_earned,
        "authenticated": user is not None,
    })

    return {
        "success": True,
        "summary": {
            "score": session.score,
            "correctAnswers": session.correct_answers,
            "incorrectAnswers": session.incorrect_answers,
            "maxStreak": session.max_streak,
            "accuracy": round(accuracy * 100),
            "timeTaken": time_taken,
            "coinsEarned": session.coins_earned,
            "isAuthenticated": user is not None,
            "floorReached": session.current_floor,
            "gemsEarned": gems_earned if user else 0,
            "milestonesReached": milestones,
            "newHighFloor": extra.get("newHighFloor", False),
            "previousHighFloor": extra.get("previousHighFloor", 0),
            "bossDefeated": session.boss_hp is not None and session.boss_hp <= 0,
        },
    }


# --- Upgrade shop ---

def action_catalogue(db: Session, user: Optional[User]) -> dict:
    upgrades = [
        {
            "id": upgrade_id,
            "name": upgrade.name,
            "description": upgrade.description,
            "baseCost": upgrade.base_cost,
            "maxLevel": upgrade.max_level,
        }
        for upgrade_id, upgrade in UPGRADES.items()
    ]
    return {
        "upgrades": upgrades,
        "userUpgrades": load_upgrades(db, user.id if user else None),
        "bossConfig": {"solo": SOLO_BOSS, "multiplayer": MULTIPLAYER_BOSS},
        "towerConfig": TOWER,
        "powerUps": [
            {"id": p.id, "name": p.name, "description": p.description, "cost": p.cost}
            for p in POWER_UPS.values()
        ],
    }


def buy_upgrade(db: Session, user: User, upgrade_id: Optional[str]) -> dict:
    if not upgrade_id:
        raise HTTPException(status_code=400, detail="Missing upgradeId")
    if upgrade_id not in UPGRADES:
        raise HTTPException(status_code=400, detail="Invalid upgrade ID")
    config = UPGRADES[upgrade_id]

    row = db.query(UserUpgrade).filter_by(user_id=user.id, upgrade_id=upgrade_id).first()
    current_level = row.level if row else 0
    if current_level >= config.max_level:
        raise HTTPException(status_code=400, detail="Upgrade already at max level")

    cost = get_upgrade_cost(upgrade_id, current_level)
    debit = db.execute(
        update(User)
        .where(User.id == user.id, User.total_coins >= cost)
        .values(total_coins=User.total_coins - cost)
        .execution_options(synchronize_session=False)
    )
    if debit.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=400, detail="Insufficient coins")

    new_level = current_level + 1
    if row:
        bumped = db.execute(
            update(UserUpgrade)
            .where(UserUpgrade.id == row.id, UserUpgrade.level == current_level)
            .values(level=new_level)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount != 1:
            db.rollback()
            raise HTTPException(status_code=409, detail="Upgrade changed concurrently, try again")
    else:
        db.add(UserUpgrade(user_id=user.id, upgrade_id=upgrade_id, level=new_level))

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Upgrade changed concurrently, try again")

    db.refresh(user)
    log_game_event("upgrade_bought", data={
        "user_id": user.id, "upgrade": upgrade_id, "level": new_level, "cost": cost,
    })

    return {
        "success": True,
        "upgradeId": upgrade_id,
        "newLevel": new_level,
        "coinsSpent": cost,
        "remainingCoins": user.total_coins,
        "nextLevelCost": get_upgrade_cost(upgrade_id, new_level) if new_level < config.max_level else None,
        "effect": upgrade_effect(upgrade_id, new_level),
    }
