from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional
import logging
import re
import traceback

import multiplayer
import solo
from auth import (
    clear_auth_cookie, get_session_user, hash_password, require_role,
    require_user, set_auth_cookie, verify_password,
)
from config import settings
from db import get_db, init_db
from logger import setup_logging, get_logger, log_game_event, set_request_id
from models import isoformat, user_summary
from tables import (
    DIFFICULTY_VALUES, GameSession, LeaderboardEntry, Question, QuestionSet, User,
)

# Initialise structured, file-based logging
setup_logging(console_level=logging.INFO)
logger = get_logger("ChemQuest")

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
MIN_PASSWORD_LENGTH = 6
MAX_DISPLAY_NAME_LENGTH = 50
MAX_LEADERBOARD_LIMIT = 100
RECENT_GAMES_LIMIT = 20

DEFAULT_SET = {
    "name": "HSC Chemistry Module 1",
    "description": "Default question set covering Properties and Structure of Matter",
    "subject": "Chemistry",
    "module": "Module 1",
}

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if settings.using_dev_secret:
        logger.warning("⚠️  JWT_SECRET not set - using the development secret")
    logger.info(f"🧪 ChemQuest API ready (database: {settings.database_url.split('://')[0]})")
    yield


app = FastAPI(title="ChemQuest API", lifespan=lifespan)

# Credentialed requests need explicit origins; "*" only works without cookies
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag every log line of a request with one id, and echo it back"""
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {type(exc).__name__}: {exc}")
    logger.debug("Full traceback:\n%s", "".join(traceback.format_exception(exc)))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# --- Request Models ---

class RegisterRequest(BaseModel):
    username: Optional[str] = None
    displayName: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None


class LoginRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class StartGameRequest(BaseModel):
    gameMode: Optional[str] = 'classic'
    questionSetId: Optional[str] = None
    subject: Optional[str] = None


class GameAnswerRequest(BaseModel):
    sessionId: Optional[str] = None
    questionId: Optional[str] = None
    selectedAnswer: Optional[int] = None  # null / -1 = ran out of time
    timeSpent: Optional[float] = None


class PowerUpRequest(BaseModel):
    sessionId: Optional[str] = None
    powerUpId: Optional[str] = None


class FinishGameRequest(BaseModel):
    sessionId: Optional[str] = None


class GameActionRequest(BaseModel):
    action: Optional[str] = None
    payload: dict = {}


class CreateGameRequest(BaseModel):
    nickname: Optional[str] = 'Host'
    gameMode: Optional[str] = 'classic'


class JoinGameRequest(BaseModel):
    gameCode: Optional[str] = None
    nickname: Optional[str] = 'Player'


class HostActionRequest(BaseModel):
    playerId: Optional[str] = None


class MultiplayerAnswerRequest(BaseModel):
    playerId: Optional[str] = None
    selectedAnswer: Optional[int] = None


class ImportedQuestion(BaseModel):
    question: Optional[str] = None
    options: Optional[list[str]] = None
    correctAnswer: Optional[int] = None
    topic: Optional[str] = None
    difficulty: Optional[str] = None
    explanation: Optional[str] = None


class ImportQuestionsRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    module: Optional[str] = None
    subject: Optional[str] = None
    isPublic: bool = False
    questions: list[ImportedQuestion] = []


# --- Auth Endpoints ---

@app.post("/api/auth/register", status_code=201)
def register(request: RegisterRequest, response: Response, db: Session = Depends(get_db)):
    """Create a student account and log it in"""
    if not request.username or not request.displayName or not request.password:
        raise HTTPException(status_code=400, detail="Username, display name, and password are required")
    if not USERNAME_PATTERN.match(request.username):
        raise HTTPException(status_code=400, detail="Username must be 3-20 characters, alphanumeric and underscores only")
    if len(request.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(request.displayName) > MAX_DISPLAY_NAME_LENGTH:
        raise HTTPException(status_code=400, detail="Display name must be 1-50 characters")

    username = request.username.lower()
    email = request.email.strip().lower() if request.email else None

    if db.query(User.id).filter(User.username == username).first():
        raise HTTPException(status_code=409, detail="Username already taken")
    if email and db.query(User.id).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        username=username,
        display_name=request.displayName,
        email=email,
        password_hash=hash_password(request.password),
        role='student',
        total_coins=0,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Username or email already taken")

    set_auth_cookie(response, user)
    logger.info(f"👤 User registered: {user.username}")
    log_game_event("user_registered", data={"user_id": user.id, "username": user.username})

    return {"userId": user.id, "username": user.username, "displayName": user.display_name}


@app.post("/api/auth/login")
def login(request: LoginRequest, response: Response, db: Session = Depends(get_db)):
    if not request.username or not request.password:
        raise HTTPException(status_code=400, detail="Username and password are required")

    user = db.query(User).filter(User.username == request.username.lower()).first()
    if user is None or not verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid username or password")

    set_auth_cookie(response, user)
    log_game_event("user_logged_in", data={"user_id": user.id})

    return user_summary(user).model_dump(exclude={"email", "role"})


@app.post("/api/auth/logout")
def logout(response: Response):
    clear_auth_cookie(response)
    return {"success": True}


@app.get("/api/auth/me")
def me(user: User = Depends(require_user)):
    return user_summary(user).model_dump()


# --- Solo Game Endpoints ---

@app.post("/api/game/start")
def start_solo_game(
    request: StartGameRequest,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(get_session_user),
):
    """Start a solo run; questions go out without their answers"""
    return solo.start_game(db, user, request.gameMode, request.questionSetId, request.subject)


@app.post("/api/game/answer")
def answer_solo_question(request: GameAnswerRequest, db: Session = Depends(get_db)):
    return solo.submit_answer(db, request.sessionId, request.questionId, request.selectedAnswer, request.timeSpent)


@app.post("/api/game/powerup/buy")
def buy_power_up(request: PowerUpRequest, db: Session = Depends(get_db)):
    return solo.buy_power_up(db, request.sessionId, request.powerUpId)


@app.post("/api/game/powerup/use")
def use_power_up(request: PowerUpRequest, db: Session = Depends(get_db)):
    return solo.use_power_up(db, request.sessionId, request.powerUpId)


@app.post("/api/game/finish")
def finish_solo_game(
    request: FinishGameRequest,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(get_session_user),
):
    """Close a run and credit an authenticated player's account"""
    return solo.finish_game(db, user, request.sessionId)


@app.get("/api/game/action")
def get_game_config(db: Session = Depends(get_db), user: Optional[User] = Depends(get_session_user)):
    return solo.action_catalogue(db, user)


@app.post("/api/game/action")
def game_action(
    request: GameActionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    if request.action == 'BUY_UPGRADE':
        return solo.buy_upgrade(db, user, request.payload.get('upgradeId'))
    raise HTTPException(status_code=400, detail="Invalid action")


# --- Multiplayer Endpoints ---

@app.post("/api/multiplayer/create")
def create_multiplayer_game(
    request: CreateGameRequest = CreateGameRequest(),
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(get_session_user),
):
    return multiplayer.create_game(db, user, request.nickname, request.gameMode)


@app.post("/api/multiplayer/join")
def join_multiplayer_game(
    request: JoinGameRequest,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(get_session_user),
):
    return multiplayer.join_game(db, user, request.gameCode, request.nickname)


@app.post("/api/multiplayer/{code}/start")
def start_multiplayer_game(code: str, request: HostActionRequest, db: Session = Depends(get_db)):
    """Start the game (host only)"""
    return multiplayer.start_game(db, code, request.playerId)


@app.post("/api/multiplayer/{code}/answer")
def answer_multiplayer_question(code: str, request: MultiplayerAnswerRequest, db: Session = Depends(get_db)):
    return multiplayer.submit_answer(db, code, request.playerId, request.selectedAnswer)


@app.post("/api/multiplayer/{code}/next")
def next_multiplayer_question(code: str, request: HostActionRequest, db: Session = Depends(get_db)):
    """Advance to the next question (host only)"""
    return multiplayer.next_question(db, code, request.playerId)


@app.get("/api/multiplayer/{code}/stream")
async def stream_multiplayer_game(code: str, request: Request, playerId: Optional[str] = None):
    """Server-sent events: gameState on every change, then gameFinished"""
    return StreamingResponse(
        multiplayer.game_event_stream(request, code, playerId),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


@app.get("/api/multiplayer/{code}/state")
def get_multiplayer_state(code: str, db: Session = Depends(get_db)):
    """Current game snapshot (polling fallback for the event stream)"""
    return multiplayer.current_state(db, code)


# --- Question Sets ---

@app.get("/api/questions/sets")
def list_question_sets(
    includeDefault: bool = False,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(get_session_user),
):
    visible = QuestionSet.is_public.is_(True)
    if user:
        visible = visible | (QuestionSet.creator_id == user.id)

    counts = dict(
        db.query(Question.question_set_id, func.count(Question.id))
        .group_by(Question.question_set_id)
        .all()
    )
    question_sets = db.query(QuestionSet).filter(visible).order_by(QuestionSet.created_at.desc()).all()

    sets = [
        {
            "id": s.id,
            "name": s.name,
            "description": s.description,
            "subject": s.subject,
            "module": s.module,
            "isPublic": s.is_public,
            "creatorUsername": s.creator.username if s.creator else 'system',
            "creatorDisplayName": s.creator.display_name if s.creator else 'ChemQuest',
            "questionCount": counts.get(s.id, 0),
            "isOwned": bool(user) and s.creator_id == user.id,
        }
        for s in question_sets
    ]

    default_count = counts.get(None, 0)
    if includeDefault and default_count > 0:
        sets.insert(0, {
            "id": None,
            **DEFAULT_SET,
            "isPublic": True,
            "creatorUsername": 'system',
            "creatorDisplayName": 'ChemQuest',
            "questionCount": default_count,
            "isOwned": False,
        })

    return {"sets": sets}


def _validate_imported(questions: list[ImportedQuestion]) -> None:
    for number, q in enumerate(questions, start=1):
        if not q.question:
            raise HTTPException(status_code=400, detail=f"Question {number}: Missing question text")
        if not q.options or len(q.options) != 4:
            raise HTTPException(status_code=400, detail=f"Question {number}: Must have exactly 4 options")
        if q.correctAnswer is None or not 0 <= q.correctAnswer <= 3:
            raise HTTPException(status_code=400, detail=f"Question {number}: correctAnswer must be 0, 1, 2, or 3")
        if not q.topic:
            raise HTTPException(status_code=400, detail=f"Question {number}: Missing topic")
        if q.difficulty not in DIFFICULTY_VALUES:
            raise HTTPException(status_code=400, detail=f"Question {number}: difficulty must be 'easy', 'medium', or 'hard'")


@app.post("/api/questions/import", status_code=201)
def import_questions(
    request: ImportQuestionsRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_role('teacher', 'admin')),
):
    """Import a question set (teachers and admins)"""
    if not request.name or not request.questions:
        raise HTTPException(status_code=400, detail="Name and questions array are required")
    _validate_imported(request.questions)

    question_set = QuestionSet(
        name=request.name,
        description=request.description or None,
        module=request.module or None,
        subject=request.subject or 'Chemistry',
        is_public=request.isPublic,
        creator_id=user.id,
    )
    db.add(question_set)
    db.flush()

    for q in request.questions:
        db.add(Question(
            question=q.question,
            option_a=q.options[0],
            option_b=q.options[1],
            option_c=q.options[2],
            option_d=q.options[3],
            correct_answer=q.correctAnswer,
            topic=q.topic,
            subject=question_set.subject,
            difficulty=q.difficulty,
            explanation=q.explanation or None,
            question_set_id=question_set.id,
        ))
    db.commit()

    logger.info(f"📥 Imported {len(request.questions)} questions into '{question_set.name}' ({user.username})")
    return {"questionSetId": question_set.id, "questionsImported": len(request.questions)}


@app.get("/api/teacher/sets")
def get_teacher_sets(db: Session = Depends(get_db), user: User = Depends(require_role('teacher', 'admin'))):
    """The caller's own sets, answers included"""
    question_sets = (
        db.query(QuestionSet)
        .filter(QuestionSet.creator_id == user.id)
        .order_by(QuestionSet.created_at.desc())
        .all()
    )
    plays = dict(
        db.query(GameSession.question_set_id, func.count(GameSession.id))
        .filter(GameSession.question_set_id.in_([s.id for s in question_sets]))
        .group_by(GameSession.question_set_id)
        .all()
    )

    return {
        "sets": [
            {
                "id": s.id,
                "name": s.name,
                "description": s.description,
                "subject": s.subject,
                "module": s.module,
                "isPublic": s.is_public,
                "questionCount": len(s.questions),
                "timesPlayed": plays.get(s.id, 0),
                "questions": [
                    {
                        "id": q.id,
                        "question": q.question,
                        "optionA": q.option_a,
                        "optionB": q.option_b,
                        "optionC": q.option_c,
                        "optionD": q.option_d,
                        "correctAnswer": q.correct_answer,
                        "topic": q.topic,
                        "difficulty": q.difficulty,
                        "explanation": q.explanation,
                    }
                    for q in s.questions
                ],
                "createdAt": isoformat(s.created_at),
            }
            for s in question_sets
        ]
    }


# --- Leaderboard & Profile ---

@app.get("/api/leaderboard")
def get_leaderboard(
    gameMode: str = 'classic',
    questionSetId: Optional[str] = None,
    limit: int = 20,
    db: Session = Depends(get_db),
):
    limit = max(1, min(limit, MAX_LEADERBOARD_LIMIT))
    query = db.query(LeaderboardEntry).filter(LeaderboardEntry.game_mode == gameMode)
    if questionSetId:
        query = query.filter(LeaderboardEntry.question_set_id == questionSetId)
    entries = query.order_by(LeaderboardEntry.score.desc(), LeaderboardEntry.created_at).limit(limit).all()

    return {
        "entries": [
            {
                "rank": rank,
                "username": entry.user.username,
                "displayName": entry.user.display_name,
                "score": entry.score,
                "accuracy": round(entry.accuracy * 100),
                "maxStreak": entry.max_streak,
                "timeTaken": entry.time_taken,
                "createdAt": isoformat(entry.created_at),
            }
            for rank, entry in enumerate(entries, start=1)
        ]
    }


@app.get("/api/profile")
def get_profile(db: Session = Depends(get_db), user: User = Depends(require_user)):
    recent_games = (
        db.query(GameSession)
        .filter(
            GameSession.user_id == user.id,
            GameSession.is_multiplayer.is_(False),
            GameSession.is_completed.is_(True),
        )
        .order_by(GameSession.completed_at.desc())
        .limit(RECENT_GAMES_LIMIT)
        .all()
    )

    # Rank of the user's best score in each mode they have played
    best_scores = (
        db.query(LeaderboardEntry.game_mode, func.max(LeaderboardEntry.score))
        .filter(LeaderboardEntry.user_id == user.id)
        .group_by(LeaderboardEntry.game_mode)
        .all()
    )
    positions = []
    for game_mode, best in best_scores:
        better = (
            db.query(func.count(LeaderboardEntry.id))
            .filter(LeaderboardEntry.game_mode == game_mode, LeaderboardEntry.score > best)
            .scalar()
        )
        positions.append({"gameMode": game_mode, "rank": better + 1, "bestScore": best})

    def accuracy(game: GameSession) -> int:
        answered = game.correct_answers + game.incorrect_answers
        return round(game.correct_answers / answered * 100) if answered else 0

    return {
        "user": user_summary(user).model_dump(),
        "recentGames": [
            {
                "id": game.id,
                "gameMode": game.game_mode,
                "score": game.score,
                "accuracy": accuracy(game),
                "maxStreak": game.max_streak,
                "totalQuestions": game.total_questions,
                "completedAt": isoformat(game.completed_at),
            }
            for game in recent_games
        ],
        "leaderboardPositions": positions,
    }


@app.get("/health")
def health():
    """Health check endpoint"""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    print(f"\n🧪 ChemQuest Server")
    print(f"   Database: {settings.database_url}")
    print(f"   URL: http://localhost:8000\n")
    uvicorn.run(app, host="0.0.0.0", port=8000)
