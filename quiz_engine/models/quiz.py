"""
Quiz model - catalog entry read by the engine
"""
from sqlalchemy import Column, String, TIMESTAMP, text
from quiz_engine.database import Base
from quiz_engine.models.column_types import JSONType


class Quiz(Base):
    """
    Quizzes table - question list and time window of a quiz instance

    `questions` holds [{question_id, difficulty, correct_answer, topic}, ...]
    """
    __tablename__ = "quizzes"

    id = Column(String(64), primary_key=True)
    title = Column(String(255))
    status = Column(String(20), default="active")
    end_time = Column(TIMESTAMP(timezone=True), nullable=True)
    questions = Column(JSONType, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))

    def __repr__(self):
        return f"<Quiz(id={self.id}, title={self.title}, status={self.status})>"
