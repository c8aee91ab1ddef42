import json

import db
import seed
from tables import Question


def count_default_bank():
    with db.SessionLocal() as session:
        return session.query(Question).filter(Question.question_set_id.is_(None)).count()


def test_seed_bundled_bank():
    assert seed.main([]) == 0
    assert count_default_bank() == 12


def test_seed_replaces_the_default_bank_unless_appending(tmp_path, seed_questions):
    seed_questions(4)
    bank = tmp_path / "bank.json"
    bank.write_text(json.dumps({"questions": [
        {"question": "pH of pure water?", "options": ["7", "1", "14", "0"], "correctAnswer": 0,
         "topic": "Acids and Bases", "difficulty": "easy"},
        {"question": "Symbol for sodium?", "options": ["Na", "S", "So"], "topic": "Elements",
         "difficulty": "impossible"},
    ]}))

    assert seed.main(["--file", str(bank)]) == 0
    assert count_default_bank() == 2

    with db.SessionLocal() as session:
        sodium = session.query(Question).filter_by(topic="Elements").one()
        assert sodium.option_d == ""
        assert sodium.difficulty == "medium"
        assert sodium.subject == "Chemistry"

    assert seed.main(["--file", str(bank), "--append"]) == 0
    assert count_default_bank() == 4


def test_seed_skips_unusable_entries(tmp_path):
    bank = tmp_path / "bank.json"
    bank.write_text(json.dumps({"questions": [
        {"question": "Charge of an electron?", "options": ["-1", "+1", "0", "+2"], "correctAnswer": 0},
        {"question": "Noble gas?", "options": ["Ne", "Na", "N", "Ni"], "correctAnswer": 5},
        {"options": ["a", "b", "c", "d"], "correctAnswer": 1},
    ]}))

    assert seed.main(["--file", str(bank)]) == 0
    assert count_default_bank() == 1


def test_seed_keeps_imported_sets(client, register):
    register(client, username="teach", role="teacher")
    client.post("/api/questions/import", json={
        "name": "Gases",
        "questions": [{"question": "Units of pressure?", "options": ["Pa", "J", "N", "W"],
                       "correctAnswer": 0, "topic": "Gases", "difficulty": "easy"}],
    })
    seed.main([])
    with db.SessionLocal() as session:
        assert session.query(Question).filter(Question.question_set_id.isnot(None)).count() == 1


def test_missing_file(tmp_path):
    assert seed.main(["--file", str(tmp_path / "nope.json")]) == 1
