"""
QuizResult model - one reconciled result per user and quiz
"""
from sqlalchemy import Column, Integer, Float, String, TIMESTAMP, UniqueConstraint
from quiz_engine.database import Base


class QuizResult(Base):
    """
    Quiz results table - normalized score (0-10) plus raw point totals
    """
    __tablename__ = "quiz_results"
    __table_args__ = (
        UniqueConstraint("user_id", "quiz_id", name="uq_quiz_results_user_quiz"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    quiz_id = Column(String(64), nullable=False, index=True)
    score = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False)
    raw_total_points = Column(Integer, nullable=False, default=0)
    max_points = Column(Integer, nullable=False, default=0)
    bonuses_total = Column(Integer, nullable=False, default=0)
    completion_time = Column(Integer, nullable=True)  # seconds from join to completion
    synced_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))

    def __repr__(self):
        return f"<QuizResult(user_id={self.user_id}, quiz_id={self.quiz_id}, score={self.score})>"
