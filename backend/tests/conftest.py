"""
Test configuration and fixtures.

MongoDB is replaced by an in-memory mongomock database swapped in through
``database.set_db``; attempt operations get a controllable clock.
"""
import copy
import itertools
import os
from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")
os.environ.setdefault("SEED_ADMIN", "0")

import database
import main


QUIZ = {
    "id": "QZ1234",
    "code": "QZ1234",
    "title": "Algebra basics",
    "timeLimit": 30,
    "version": 1,
    "createdBy": "teacher-1",
    "maxAttempts": 2,
    "isPublished": True,
    "isActive": True,
    "questions": [
        {
            "id": "q1",
            "text": "2 + 2 = ?",
            "questionType": "single_choice_radio",
            "options": [
                {"id": "a", "text": "3"},
                {"id": "b", "text": "4", "isCorrect": True},
            ],
            "points": 2,
        },
        {
            "id": "q2",
            "text": "Pick the primes",
            "questionType": "multiple_choice",
            "options": [
                {"id": "a", "text": "2", "isCorrect": True},
                {"id": "b", "text": "3", "isCorrect": True},
                {"id": "c", "text": "4"},
            ],
            "points": 2,
        },
        {
            "id": "q3",
            "text": "Capital of France",
            "questionType": "fill_blanks",
            "correctOptions": ["Paris"],
            "points": 1,
        },
        {
            "id": "q4",
            "text": "Explain your reasoning",
            "questionType": "free_text",
            "points": 5,
        },
    ],
}


class FakeClock:
    def __init__(self, start=datetime(2025, 3, 10, 9, 0, 0)):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def db():
    mock_db = mongomock.MongoClient()["quiz_app_test"]
    database.set_db(mock_db)
    database.ensure_indexes(mock_db)
    yield mock_db
    database.set_db(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quiz(db):
    doc = copy.deepcopy(QUIZ)
    db["quiz"].insert_one(doc)
    return doc


@pytest.fixture
def make_attempt(db, clock):
    numbers = itertools.count(1)

    def _make(**fields):
        now = clock()
        doc = {
            "quizId": QUIZ["id"],
            "studentId": "stu-1",
            "attemptNumber": next(numbers),
            "status": "in_progress",
            "answers": {},
            "currentQuestionIndex": 0,
            "timeRemaining": 1800,
            "timeLimit": 1800,
            "violations": [],
            "startedAt": now,
            "submittedAt": None,
            "createdAt": now,
            "updatedAt": now,
            "version": 0,
        }
        doc.update(fields)
        return str(db["attempt"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def stored(db):
    """Read an attempt document straight from the collection."""
    def _stored(attempt_id):
        return db["attempt"].find_one({"_id": database.to_object_id(attempt_id)})
    return _stored


@pytest.fixture
def client(db):
    return TestClient(main.app)


def _headers(uid, role):
    token = main.create_access_token({"sub": uid, "email": f"{uid}@university.edu", "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def teacher_headers():
    return _headers("teacher-1", "teacher")


@pytest.fixture
def student_headers():
    return _headers("stu-1", "student")
