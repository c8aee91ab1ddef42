# backend/tests/conftest.py

import os
import tempfile

# Must be set before the app modules read their settings
os.environ.setdefault("CHEMQUEST_LOG_DIR", tempfile.mkdtemp(prefix="chemquest-logs-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp(prefix='chemquest-db-')}/bootstrap.db")
os.environ.setdefault("JWT_SECRET", "chemquest-test-secret-0123456789abcdef")
os.environ["BCRYPT_ROUNDS"] = "4"

import pytest
from fastapi.testclient import TestClient

import db
from main import app
from tables import GameSession, Question, User


@pytest.fixture(autouse=True)
def database(tmp_path):
    """Fresh SQLite file per test"""
    db.configure(f"sqlite:///{(tmp_path / 'chemquest.db').as_posix()}")
    db.init_db()
    yield
    db.engine.dispose()


@pytest.fixture()
def client():
    return TestClient(app)


@pytest.fixture()
def make_client():
    """Independent clients, each with its own cookie jar"""
    def factory():
        return TestClient(app)
    return factory


@pytest.fixture()
def seed_questions():
    """Insert questions whose correct answer is always option A (0)"""
    def seed(count=12, question_set_id=None, subject="Chemistry", topic="Atomic Structure"):
        with db.SessionLocal() as session:
            questions = [
                Question(
                    question=f"{topic} question {i + 1}?",
                    option_a="Right",
                    option_b="Wrong 1",
                    option_c="Wrong 2",
                    option_d="Wrong 3",
                    correct_answer=0,
                    topic=topic,
                    subject=subject,
                    difficulty="easy",
                    explanation="Option A is always right here.",
                    question_set_id=question_set_id,
                )
                for i in range(count)
            ]
            session.add_all(questions)
            session.commit()
            return [q.id for q in questions]
    return seed


@pytest.fixture()
def register():
    """Register through the API (logging that client in); optionally promote"""
    def do_register(client, username="alice", password="secret123", display_name=None, role=None, coins=None):
        res = client.post("/api/auth/register", json={
            "username": username,
            "displayName": display_name or username.title(),
            "password": password,
        })
        assert res.status_code == 201, res.text
        data = res.json()
        if role or coins is not None:
            with db.SessionLocal() as session:
                user = session.get(User, data["userId"])
                if role:
                    user.role = role
                if coins is not None:
                    user.total_coins = coins
                session.commit()
        return data
    return do_register


@pytest.fixture()
def load_session():
    def load(session_id=None, game_code=None):
        with db.SessionLocal() as session:
            if session_id:
                return session.get(GameSession, session_id)
            return session.query(GameSession).filter_by(game_code=game_code).first()
    return load


@pytest.fixture()
def update_session():
    def update(session_id, **values):
        with db.SessionLocal() as session:
            row = session.get(GameSession, session_id)
            for key, value in values.items():
                setattr(row, key, value)
            session.commit()
    return update
