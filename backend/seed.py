"""
Load a JSON question bank into the default question bank.

    python backend/seed.py                      # replace with data/chemistry_questions.json
    python backend/seed.py --file my.json --append
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from config import BACKEND_DIR
from db import SessionLocal, init_db
from logger import get_logger, setup_logging
from tables import DIFFICULTY_VALUES, Question

logger = get_logger("ChemQuest.seed")

DEFAULT_FILE = BACKEND_DIR / "data" / "chemistry_questions.json"


def load_bank(path: Path) -> list[dict]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return data.get("questions") or []


def to_question(raw: dict) -> Optional[Question]:
    """Build a row from a bank entry; None when the entry can't be stored"""
    correct = raw.get("correctAnswer") or 0
    if not raw.get("question") or not isinstance(correct, int) or not 0 <= correct <= 3:
        return None
    options = list(raw.get("options") or [])
    options += [""] * (4 - len(options))
    difficulty = raw.get("difficulty") if raw.get("difficulty") in DIFFICULTY_VALUES else "medium"
    return Question(
        question=raw["question"],
        option_a=options[0],
        option_b=options[1],
        option_c=options[2],
        option_d=options[3],
        correct_answer=correct,
        topic=raw.get("topic") or "General",
        subject=raw.get("subject") or "Chemistry",
        difficulty=difficulty,
        explanation=raw.get("explanation"),
    )


def seed(path: Path = DEFAULT_FILE, append: bool = False) -> int:
    """Insert the bank at `path`; returns how many questions were written"""
    questions = []
    for number, raw in enumerate(load_bank(path), start=1):
        question = to_question(raw)
        if question is None:
            logger.warning(f"⚠️  Skipping question {number}: needs text and a correctAnswer from 0 to 3")
            continue
        questions.append(question)

    init_db()
    with SessionLocal() as db:
        if not append:
            cleared = db.query(Question).filter(Question.question_set_id.is_(None)).delete()
            logger.info(f"🧹 Cleared {cleared} default-bank questions")
        db.add_all(questions)
        db.commit()

    logger.info(f"🌱 Inserted {len(questions)} questions from {path}")
    return len(questions)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed the ChemQuest default question bank")
    parser.add_argument("--file", type=Path, default=DEFAULT_FILE, help="JSON bank to load")
    parser.add_argument("--append", action="store_true", help="keep existing default-bank questions")
    args = parser.parse_args(argv)

    setup_logging(console_level=logging.INFO)
    if not args.file.is_file():
        logger.error(f"❌ Question bank not found: {args.file}")
        return 1
    seed(args.file, append=args.append)
    return 0


if __name__ == "__main__":
    sys.exit(main())
