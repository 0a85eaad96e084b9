"""
Durable repository over the relational store

All writes are upserts keyed on the tables' unique constraints, so running
the same reconciliation twice leaves the same rows behind.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from quiz_engine.models import QuestionAttempt, QuizResult, TopicPerformance

logger = logging.getLogger(__name__)

ATTEMPT_KEY = ["user_id", "question_id", "quiz_id", "attempt_index"]
ATTEMPT_UPDATE_COLUMNS = [
    "selected_answer",
    "is_correct",
    "time_spent",
    "points_earned",
    "scoring_breakdown",
    "streak_at_time",
    "unanswered",
    "attempt_date",
]

RESULT_KEY = ["user_id", "quiz_id"]
RESULT_UPDATE_COLUMNS = [
    "score",
    "status",
    "raw_total_points",
    "max_points",
    "bonuses_total",
    "completion_time",
    "synced_at",
    "updated_at",
]

TOPIC_KEY = ["user_id", "quiz_id", "topic"]
TOPIC_UPDATE_COLUMNS = ["total_attempts", "correct_answers", "accuracy", "updated_at"]


class QuizRepository:
    """Bulk upserts and read helpers bound to one SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db

    def _insert(self, model):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise NotImplementedError(f"Upserts are not supported on {dialect}")

    def _upsert(self, model, rows: List[Dict[str, Any]], key: List[str], update_columns: List[str]) -> int:
        if not rows:
            return 0
        stmt = self._insert(model).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=key,
            set_={column: stmt.excluded[column] for column in update_columns}
        )
        self.db.execute(stmt)
        return len(rows)

    # Writes

    def upsert_attempts(self, rows: List[Dict[str, Any]]) -> int:
        """Insert or refresh attempt rows (update on conflict, never ignore)"""
        return self._upsert(QuestionAttempt, rows, ATTEMPT_KEY, ATTEMPT_UPDATE_COLUMNS)

    def insert_unanswered(self, rows: List[Dict[str, Any]]) -> int:
        """Insert synthetic rows, leaving any existing row for the key alone"""
        if not rows:
            return 0
        stmt = self._insert(QuestionAttempt).values(rows).on_conflict_do_nothing(index_elements=ATTEMPT_KEY)
        self.db.execute(stmt)
        return len(rows)

    def upsert_result(self, row: Dict[str, Any]) -> None:
        self._upsert(QuizResult, [row], RESULT_KEY, RESULT_UPDATE_COLUMNS)

    def upsert_topic_stats(self, rows: List[Dict[str, Any]]) -> int:
        return self._upsert(TopicPerformance, rows, TOPIC_KEY, TOPIC_UPDATE_COLUMNS)

    # Reads

    def existing_question_ids(self, user_id: str, quiz_id: str, question_ids: Iterable[str]) -> Set[str]:
        question_ids = list(question_ids)
        if not question_ids:
            return set()
        rows = self.db.query(QuestionAttempt.question_id).filter(
            QuestionAttempt.user_id == user_id,
            QuestionAttempt.quiz_id == quiz_id,
            QuestionAttempt.question_id.in_(question_ids)
        ).distinct().all()
        return {row[0] for row in rows}

    def list_attempts(self, quiz_id: str, user_id: Optional[str] = None) -> List[QuestionAttempt]:
        query = self.db.query(QuestionAttempt).filter(QuestionAttempt.quiz_id == quiz_id)
        if user_id is not None:
            query = query.filter(QuestionAttempt.user_id == user_id)
        return query.order_by(
            QuestionAttempt.user_id,
            QuestionAttempt.question_id,
            QuestionAttempt.attempt_index
        ).all()

    def get_result(self, quiz_id: str, user_id: str) -> Optional[QuizResult]:
        return self.db.query(QuizResult).filter(
            QuizResult.quiz_id == quiz_id,
            QuizResult.user_id == user_id
        ).first()

    def list_results(self, quiz_id: str) -> List[QuizResult]:
        return self.db.query(QuizResult).filter(
            QuizResult.quiz_id == quiz_id
        ).order_by(QuizResult.score.desc(), QuizResult.user_id).all()

    def list_topic_stats(self, quiz_id: str, user_id: str) -> List[TopicPerformance]:
        return self.db.query(TopicPerformance).filter(
            TopicPerformance.quiz_id == quiz_id,
            TopicPerformance.user_id == user_id
        ).order_by(TopicPerformance.topic).all()

    def durable_user_ids(self, quiz_id: str) -> List[str]:
        rows = self.db.query(QuizResult.user_id).filter(QuizResult.quiz_id == quiz_id).all()
        return sorted(row[0] for row in rows)
