from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import quiz_engine.models  # noqa: F401
from quiz_engine.config import Settings
from quiz_engine.container import build_container
from quiz_engine.database import Base
from quiz_engine.services.catalog_service import StaticCatalog
from quiz_engine.store.doc_store import InMemoryDocStore
from quiz_engine.utils.clock import FrozenClock
from quiz_engine.utils.event_bus import InMemoryEventBus
from quiz_engine.utils.lease_lock import InMemoryLeaseLock

QUIZ_ID = "quiz-1"
RACE_ID = "race-1"

# Two medium questions: the worked example quiz
QUESTIONS = [
    {"question_id": "q1", "difficulty": "medium", "correct_answer": "a", "topic": "algebra"},
    {"question_id": "q2", "difficulty": "medium", "correct_answer": "b", "topic": "geometry"},
]

RACE_QUESTIONS = [
    {"question_id": f"r{i}", "difficulty": difficulty, "correct_answer": "x", "topic": "speed"}
    for i, difficulty in enumerate(["easy", "medium", "hard", "easy", "medium", "hard"], start=1)
]


class RecordingDispatcher:
    """Stands in for the thread pool so reconciliation only runs when a test asks"""

    def __init__(self):
        self.participants = []
        self.quizzes = []

    def dispatch_participant(self, quiz_id, user_id, barrier=None):
        self.participants.append((quiz_id, user_id, barrier))

    def dispatch_quiz(self, quiz_id, barrier=None):
        self.quizzes.append(quiz_id)

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryDocStore()


@pytest.fixture
def lock():
    return InMemoryLeaseLock()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def catalog():
    catalog = StaticCatalog()
    catalog.add_quiz(QUIZ_ID, QUESTIONS)
    catalog.add_quiz(RACE_ID, RACE_QUESTIONS)
    return catalog


@pytest.fixture
def test_settings():
    return Settings(
        STORE_BACKEND="memory",
        EVENT_BACKEND="memory",
        SYNC_BARRIER_TIMEOUT=0.5,
        SYNC_WORKERS=2,
    )


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def engine(test_settings, session_factory, store, lock, bus, catalog, dispatcher, clock):
    container = build_container(
        config=test_settings,
        session_factory=session_factory,
        store=store,
        lock=lock,
        bus=bus,
        catalog=catalog,
        dispatcher=dispatcher,
        clock=clock,
    )
    yield container
    container.shutdown()


@pytest.fixture
def submit(engine):
    """submit(user, question, answer, response_time_ms=3000, quiz_id=QUIZ_ID)"""
    def _submit(user_id, question_id, answer_id, response_time_ms=3000, quiz_id=QUIZ_ID):
        return engine.ledger.submit_answer(quiz_id, user_id, question_id, answer_id, response_time_ms)
    return _submit
