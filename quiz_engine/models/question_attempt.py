"""
QuestionAttempt model - one durable row per attempt
"""
from sqlalchemy import Column, Integer, String, Boolean, TIMESTAMP, UniqueConstraint, Index
from quiz_engine.database import Base
from quiz_engine.models.column_types import JSONType


class QuestionAttempt(Base):
    """
    Question attempts table - flattened attempt history

    Unique per (user, question, quiz, attempt_index) so reconciliation can
    upsert instead of insert. Questions never answered get a synthetic
    attempt 1 with `unanswered` set.
    """
    __tablename__ = "question_attempts"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "question_id", "quiz_id", "attempt_index",
            name="uq_question_attempts_user_question_quiz_attempt"
        ),
        Index("ix_question_attempts_quiz_user", "quiz_id", "user_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    question_id = Column(String(64), nullable=False)
    quiz_id = Column(String(64), nullable=False)
    attempt_index = Column(Integer, nullable=False)
    selected_answer = Column(String(255), nullable=True)
    is_correct = Column(Boolean, nullable=False, default=False)
    time_spent = Column(Integer, nullable=False, default=0)  # milliseconds
    points_earned = Column(Integer, nullable=False, default=0)
    scoring_breakdown = Column(JSONType)
    streak_at_time = Column(Integer, nullable=False, default=0)
    unanswered = Column(Boolean, nullable=False, default=False)
    attempt_date = Column(TIMESTAMP(timezone=True))

    def __repr__(self):
        return (
            f"<QuestionAttempt(user_id={self.user_id}, question_id={self.question_id}, "
            f"attempt={self.attempt_index}, points={self.points_earned})>"
        )
