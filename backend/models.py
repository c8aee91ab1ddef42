from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
import secrets

from game_config import GAME_CODE_CHARS, GAME_CODE_LENGTH


class QuestionView(BaseModel):
    """A question as shown to players (never carries the correct answer)"""
    id: str
    question: str
    optionA: str
    optionB: str
    optionC: str
    optionD: str
    subject: str = "Chemistry"
    topic: str = ""
    difficulty: str = "medium"


class ModeConfigView(BaseModel):
    timePerQuestion: int
    totalQuestions: int
    lives: Optional[int] = None
    bossHp: Optional[int] = None
    bossMaxHp: Optional[int] = None
    isCooperative: bool = False


class PlayerState(BaseModel):
    id: str
    nickname: str
    score: int
    streak: int
    isHost: bool
    hasAnswered: bool


BOSS_FIELDS = ("bossHp", "bossMaxHp", "bossEnraged", "bossDefeated", "isCooperative", "questionsAnswered")


class _BossAware(BaseModel):
    def to_event(self) -> dict:
        """Dump for the wire; boss fields are left out unless they were set"""
        unset = {name for name in BOSS_FIELDS if name in type(self).model_fields and getattr(self, name) is None}
        return self.model_dump(exclude=unset)


class GameState(_BossAware):
    """Snapshot pushed to multiplayer clients on every change"""
    gameStatus: str  # 'waiting' | 'playing' | 'finished'
    currentQuestion: int
    totalQuestions: int
    gameMode: str
    players: list[PlayerState]
    question: Optional[QuestionView] = None
    questionStartedAt: Optional[str] = None
    answeredCount: int = 0
    totalPlayers: int = 0
    # Boss battle only
    bossHp: Optional[int] = None
    bossMaxHp: Optional[int] = None
    bossEnraged: Optional[bool] = None
    bossDefeated: Optional[bool] = None
    isCooperative: Optional[bool] = None


class FinalPlayerResult(BaseModel):
    id: str
    nickname: str
    score: int
    correctAnswers: int
    maxStreak: int
    isHost: bool


class GameFinished(_BossAware):
    gameMode: str
    players: list[FinalPlayerResult]
    bossDefeated: Optional[bool] = None
    bossHp: Optional[int] = None
    bossMaxHp: Optional[int] = None
    questionsAnswered: Optional[int] = None


class UserSummary(BaseModel):
    userId: str
    username: str
    displayName: str
    email: Optional[str] = None
    role: str = "student"
    totalCoins: int = 0
    totalScore: int = 0
    gamesPlayed: int = 0
    bestStreak: int = 0
    gems: int = 0


def question_view(question) -> QuestionView:
    return QuestionView(
        id=question.id,
        question=question.question,
        optionA=question.option_a,
        optionB=question.option_b,
        optionC=question.option_c,
        optionD=question.option_d,
        subject=question.subject or "Chemistry",
        topic=question.topic or "",
        difficulty=question.difficulty or "medium",
    )


def user_summary(user) -> UserSummary:
    return UserSummary(
        userId=user.id,
        username=user.username,
        displayName=user.display_name,
        email=user.email,
        role=user.role,
        totalCoins=user.total_coins,
        totalScore=user.total_score,
        gamesPlayed=user.games_played,
        bestStreak=user.best_streak,
        gems=user.gems,
    )


def utcnow() -> datetime:
    """Naive UTC timestamp (what SQLite hands back, so comparisons stay consistent)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def generate_game_code(length: int = GAME_CODE_LENGTH) -> str:
    """Generate a random game code (no O/0/I/1 to avoid confusion)"""
    return ''.join(secrets.choice(GAME_CODE_CHARS) for _ in range(length))


def generate_id() -> str:
    """Generate a row / player ID"""
    return secrets.token_urlsafe(16)
