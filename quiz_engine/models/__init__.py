"""
Database models package
"""
from quiz_engine.models.quiz import Quiz
from quiz_engine.models.question_attempt import QuestionAttempt
from quiz_engine.models.quiz_result import QuizResult
from quiz_engine.models.topic_performance import TopicPerformance

__all__ = ["Quiz", "QuestionAttempt", "QuizResult", "TopicPerformance"]
