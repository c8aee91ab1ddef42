# ORM tables for accounts, question banks and game sessions
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey,
    Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from db import Base
from models import generate_id, utcnow

ROLE_VALUES = ("student", "teacher", "admin")
DIFFICULTY_VALUES = ("easy", "medium", "hard")
GAME_STATUS_VALUES = ("waiting", "playing", "finished")


class User(Base):
    __tablename__ = "users"
    id = Column(String(32), primary_key=True, default=generate_id)
    username = Column(String(20), nullable=False, unique=True, index=True)
    display_name = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, nullable=True)
    password_hash = Column(String(100), nullable=False)
    role = Column(String(20), nullable=False, default="student")
    total_coins = Column(Integer, nullable=False, default=0)
    total_score = Column(Integer, nullable=False, default=0)
    games_played = Column(Integer, nullable=False, default=0)
    total_correct = Column(Integer, nullable=False, default=0)
    total_incorrect = Column(Integer, nullable=False, default=0)
    best_streak = Column(Integer, nullable=False, default=0)
    gems = Column(Integer, nullable=False, default=0)
    lifetime_earnings = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    upgrades = relationship("UserUpgrade", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(f"role IN {ROLE_VALUES}", name="ck_users_role"),
        CheckConstraint("total_coins >= 0", name="ck_users_coins_min"),
    )


class QuestionSet(Base):
    __tablename__ = "question_sets"
    id = Column(String(32), primary_key=True, default=generate_id)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    subject = Column(String(100), nullable=False, default="Chemistry")
    module = Column(String(100), nullable=True)
    is_public = Column(Boolean, nullable=False, default=False)
    creator_id = Column(String(32), ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    creator = relationship("User")
    questions = relationship("Question", back_populates="question_set", cascade="all, delete-orphan")


class Question(Base):
    __tablename__ = "questions"
    id = Column(String(32), primary_key=True, default=generate_id)
    question = Column(Text, nullable=False)
    option_a = Column(Text, nullable=False)
    option_b = Column(Text, nullable=False)
    option_c = Column(Text, nullable=False)
    option_d = Column(Text, nullable=False)
    correct_answer = Column(Integer, nullable=False)
    topic = Column(String(100), nullable=False, default="General")
    subject = Column(String(100), nullable=False, default="Chemistry")
    difficulty = Column(String(10), nullable=False, default="medium")
    explanation = Column(Text, nullable=True)
    question_set_id = Column(String(32), ForeignKey("question_sets.id"), nullable=True, index=True)

    question_set = relationship("QuestionSet", back_populates="questions")

    __table_args__ = (
        CheckConstraint("correct_answer BETWEEN 0 AND 3", name="ck_questions_correct"),
        CheckConstraint(f"difficulty IN {DIFFICULTY_VALUES}", name="ck_questions_difficulty"),
    )

    @property
    def options(self) -> list[str]:
        return [self.option_a, self.option_b, self.option_c, self.option_d]


class GameSession(Base):
    __tablename__ = "game_sessions"
    id = Column(String(32), primary_key=True, default=generate_id)
    game_code = Column(String(6), nullable=False, unique=True, index=True)
    game_mode = Column(String(20), nullable=False, default="classic")
    is_multiplayer = Column(Boolean, nullable=False, default=False)
    total_questions = Column(Integer, nullable=False, default=0)
    time_per_question = Column(Integer, nullable=False, default=30)
    question_ids = Column(JSON, nullable=False, default=list)
    current_question = Column(Integer, nullable=False, default=0)
    game_status = Column(String(10), nullable=False, default="waiting")
    question_started_at = Column(DateTime, nullable=True)

    # Solo run counters (multiplayer keeps these per Player)
    score = Column(Integer, nullable=False, default=0)
    streak = Column(Integer, nullable=False, default=0)
    max_streak = Column(Integer, nullable=False, default=0)
    correct_answers = Column(Integer, nullable=False, default=0)
    incorrect_answers = Column(Integer, nullable=False, default=0)
    coins = Column(Integer, nullable=False, default=0)  # in-game wallet
    coins_earned = Column(Integer, nullable=False, default=0)
    lives = Column(Integer, nullable=True)
    power_ups = Column(JSON, nullable=False, default=dict)  # powerUpId -> owned count
    double_points = Column(Boolean, nullable=False, default=False)
    time_frozen = Column(Boolean, nullable=False, default=False)

    boss_hp = Column(Integer, nullable=True)
    boss_max_hp = Column(Integer, nullable=True)
    current_floor = Column(Integer, nullable=False, default=0)
    is_cooperative = Column(Boolean, nullable=False, default=False)

    host_id = Column(String(32), nullable=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=True, index=True)
    question_set_id = Column(String(32), ForeignKey("question_sets.id"), nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    players = relationship("Player", back_populates="game_session", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(f"game_status IN {GAME_STATUS_VALUES}", name="ck_sessions_status"),
    )


class Player(Base):
    __tablename__ = "players"
    id = Column(String(32), primary_key=True, default=generate_id)
    game_session_id = Column(String(32), ForeignKey("game_sessions.id"), nullable=False, index=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=True)
    nickname = Column(String(30), nullable=False)
    is_host = Column(Boolean, nullable=False, default=False)
    is_connected = Column(Boolean, nullable=False, default=True)
    score = Column(Integer, nullable=False, default=0)
    streak = Column(Integer, nullable=False, default=0)
    max_streak = Column(Integer, nullable=False, default=0)
    correct_answers = Column(Integer, nullable=False, default=0)
    incorrect_answers = Column(Integer, nullable=False, default=0)
    current_answer = Column(Integer, nullable=True)  # null until answered this question
    answered_at = Column(DateTime, nullable=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)

    game_session = relationship("GameSession", back_populates="players")


class PlayerAnswer(Base):
    __tablename__ = "player_answers"
    id = Column(String(32), primary_key=True, default=generate_id)
    game_session_id = Column(String(32), ForeignKey("game_sessions.id"), nullable=False, index=True)
    player_id = Column(String(32), ForeignKey("players.id"), nullable=True)
    question_id = Column(String(32), ForeignKey("questions.id"), nullable=False)
    question_index = Column(Integer, nullable=False)
    selected_answer = Column(Integer, nullable=False, default=-1)  # -1 = timed out
    is_correct = Column(Boolean, nullable=False)
    time_spent = Column(Integer, nullable=False, default=0)
    points_earned = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("game_session_id", "player_id", "question_index", name="uq_answers_player_question"),
    )


class UserUpgrade(Base):
    __tablename__ = "user_upgrades"
    id = Column(String(32), primary_key=True, default=generate_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    upgrade_id = Column(String(30), nullable=False)
    level = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="upgrades")

    __table_args__ = (
        UniqueConstraint("user_id", "upgrade_id", name="uq_upgrades_user_upgrade"),
    )


class UserProgress(Base):
    __tablename__ = "user_progress"
    id = Column(String(32), primary_key=True, default=generate_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    mode = Column(String(20), nullable=False)
    highest_floor = Column(Integer, nullable=False, default=0)
    best_time = Column(Integer, nullable=True)
    total_runs = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "mode", name="uq_progress_user_mode"),
    )


class LeaderboardEntry(Base):
    __tablename__ = "leaderboard_entries"
    id = Column(String(32), primary_key=True, default=generate_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    question_set_id = Column(String(32), ForeignKey("question_sets.id"), nullable=True)
    game_mode = Column(String(20), nullable=False, index=True)
    score = Column(Integer, nullable=False, default=0)
    accuracy = Column(Float, nullable=False, default=0.0)  # 0..1
    max_streak = Column(Integer, nullable=False, default=0)
    time_taken = Column(Integer, nullable=False, default=0)  # seconds
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User")
