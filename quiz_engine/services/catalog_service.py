"""
Read-only catalog lookups: quiz question lists, end times, question metadata
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from quiz_engine.config import settings
from quiz_engine.exceptions import CatalogLookupError
from quiz_engine.models import Quiz
from quiz_engine.store.documents import SESSION_FINISHED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuestionInfo:
    question_id: str
    difficulty: str
    correct_answer: str
    topic: str = "general"


@dataclass
class QuizInfo:
    quiz_id: str
    questions: List[QuestionInfo]
    end_time: Optional[datetime] = None
    status: str = "active"
    _by_id: Dict[str, QuestionInfo] = field(init=False, repr=False)

    def __post_init__(self):
        self._by_id = {q.question_id: q for q in self.questions}

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def question_ids(self) -> List[str]:
        return [q.question_id for q in self.questions]

    def question(self, question_id: str) -> QuestionInfo:
        try:
            return self._by_id[question_id]
        except KeyError:
            raise CatalogLookupError(f"Question {question_id} is not part of quiz {self.quiz_id}")


def question_from_dict(data: Dict[str, Any]) -> QuestionInfo:
    return QuestionInfo(
        question_id=str(data["question_id"]),
        difficulty=data.get("difficulty") or settings.DEFAULT_DIFFICULTY,
        correct_answer=str(data.get("correct_answer")),
        topic=data.get("topic") or "general",
    )


class Catalog(ABC):
    """External collaborator owning quiz and question metadata"""

    @abstractmethod
    def get_quiz(self, quiz_id: str) -> QuizInfo:
        """Raise CatalogLookupError for unknown quizzes"""

    def get_question(self, quiz_id: str, question_id: str) -> QuestionInfo:
        return self.get_quiz(quiz_id).question(question_id)

    @abstractmethod
    def mark_finished(self, quiz_id: str) -> bool:
        """Record that the quiz is closed for good; returns False for unknown quizzes"""


class SqlCatalog(Catalog):
    """Catalog backed by the `quizzes` table"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_quiz(self, quiz_id: str) -> QuizInfo:
        with self.session_factory() as db:
            quiz = db.query(Quiz).filter(Quiz.id == quiz_id).first()
            if not quiz:
                raise CatalogLookupError(f"Quiz {quiz_id} not found")
            return QuizInfo(
                quiz_id=quiz.id,
                questions=[question_from_dict(q) for q in (quiz.questions or [])],
                end_time=quiz.end_time,
                status=quiz.status or "active",
            )

    def mark_finished(self, quiz_id: str) -> bool:
        with self.session_factory() as db:
            quiz = db.query(Quiz).filter(Quiz.id == quiz_id).first()
            if not quiz:
                logger.warning(f"Cannot mark unknown quiz {quiz_id} finished")
                return False
            if quiz.status != SESSION_FINISHED:
                quiz.status = SESSION_FINISHED
                db.commit()
                logger.info(f"Quiz {quiz_id} marked finished in the catalog")
            return True


class StaticCatalog(Catalog):
    """In-process catalog for fixtures, demos and single-node deployments"""

    def __init__(self, quizzes: Dict[str, QuizInfo] = None):
        self.quizzes: Dict[str, QuizInfo] = dict(quizzes or {})

    def add_quiz(
        self,
        quiz_id: str,
        questions: List[Dict[str, Any]],
        end_time: Optional[datetime] = None,
        status: str = "active"
    ) -> QuizInfo:
        info = QuizInfo(
            quiz_id=quiz_id,
            questions=[question_from_dict(q) for q in questions],
            end_time=end_time,
            status=status,
        )
        self.quizzes[quiz_id] = info
        return info

    def get_quiz(self, quiz_id: str) -> QuizInfo:
        try:
            return self.quizzes[quiz_id]
        except KeyError:
            raise CatalogLookupError(f"Quiz {quiz_id} not found")

    def mark_finished(self, quiz_id: str) -> bool:
        quiz = self.quizzes.get(quiz_id)
        if quiz is None:
            return False
        quiz.status = SESSION_FINISHED
        return True
