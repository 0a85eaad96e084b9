"""
TopicPerformance model - per-topic accuracy of a user within a quiz
"""
from sqlalchemy import Column, Integer, Float, String, TIMESTAMP, UniqueConstraint
from quiz_engine.database import Base


class TopicPerformance(Base):
    """
    Topic performance table - rebuilt from the flattened attempts on every sync

    Keyed per quiz so a re-run overwrites instead of accumulating.
    """
    __tablename__ = "topic_performance"
    __table_args__ = (
        UniqueConstraint("user_id", "quiz_id", "topic", name="uq_topic_performance_user_quiz_topic"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    quiz_id = Column(String(64), nullable=False)
    topic = Column(String(100), nullable=False)
    total_attempts = Column(Integer, nullable=False, default=0)
    correct_answers = Column(Integer, nullable=False, default=0)
    accuracy = Column(Float, nullable=False, default=0.0)
    updated_at = Column(TIMESTAMP(timezone=True))

    def __repr__(self):
        return f"<TopicPerformance(user_id={self.user_id}, topic={self.topic}, accuracy={self.accuracy})>"
