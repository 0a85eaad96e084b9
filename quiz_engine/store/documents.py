"""
Ephemeral session documents

Layout in the document store:
    sessions/{quiz_id}/meta
    sessions/{quiz_id}/participants/{user_id}
    sessions/{quiz_id}/leaderboard
"""
import re
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

SESSION_ACTIVE = "active"
SESSION_FINISHED = "finished"

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"

_INVALID_KEY = re.compile(r"[/.#$\[\]\s]")


def is_valid_key(value: Any) -> bool:
    """Ids become path segments, so they must be non-empty and separator free"""
    return isinstance(value, str) and bool(value) and not _INVALID_KEY.search(value)


def session_path(quiz_id: str) -> str:
    return f"sessions/{quiz_id}"


def meta_path(quiz_id: str) -> str:
    return f"sessions/{quiz_id}/meta"


def participants_path(quiz_id: str) -> str:
    return f"sessions/{quiz_id}/participants"


def participant_path(quiz_id: str, user_id: str) -> str:
    return f"sessions/{quiz_id}/participants/{user_id}"


def leaderboard_path(quiz_id: str) -> str:
    return f"sessions/{quiz_id}/leaderboard"


class AttemptRecord(BaseModel):
    """One scored submission for a question"""
    attempt_index: int
    answer_id: str
    is_correct: bool
    response_time_ms: int
    points_earned: int
    scoring_breakdown: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int


class AnswerRecord(BaseModel):
    """Latest attempt mirror plus the full attempt history for one question"""
    answer_id: Optional[str] = None
    is_correct: bool = False
    response_time: int = 0
    points_earned: int = 0
    timestamp: Optional[int] = None
    scoring_breakdown: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    attempt_history: List[AttemptRecord] = Field(default_factory=list)

    def latest(self) -> Optional[AttemptRecord]:
        return self.attempt_history[-1] if self.attempt_history else None

    def record(self, attempt: AttemptRecord) -> None:
        """Append an attempt and overwrite the mirror with it"""
        self.attempt_history.append(attempt)
        self.attempts = len(self.attempt_history)
        self.answer_id = attempt.answer_id
        self.is_correct = attempt.is_correct
        self.response_time = attempt.response_time_ms
        self.points_earned = attempt.points_earned
        self.timestamp = attempt.timestamp
        self.scoring_breakdown = dict(attempt.scoring_breakdown)


class Participant(BaseModel):
    """Live per-user quiz state"""
    user_id: str
    current_score: int = 0
    correct_answers: int = 0
    total_answers: int = 0
    total_response_time: int = 0
    current_streak: int = 0
    status: str = STATUS_IN_PROGRESS
    completed_at: Optional[int] = None
    joined_at: Optional[int] = None
    last_answer_time: Optional[int] = None
    current_question_id: Optional[str] = None
    answers: Dict[str, AnswerRecord] = Field(default_factory=dict)

    def recompute_aggregates(self) -> None:
        """
        Rebuild score/correct/answered from the answer map

        Only the latest attempt of each question counts, and the totals are
        recomputed from scratch on every write so they cannot drift.
        """
        score = 0
        correct = 0
        response_time = 0
        for answer in self.answers.values():
            latest = answer.latest()
            if latest is None:
                continue
            score += latest.points_earned
            response_time += latest.response_time_ms
            if latest.is_correct:
                correct += 1
        self.current_score = score
        self.correct_answers = correct
        self.total_answers = sum(1 for a in self.answers.values() if a.attempt_history)
        self.total_response_time = response_time

    @property
    def accuracy(self) -> float:
        if self.total_answers == 0:
            return 0.0
        return self.correct_answers / self.total_answers

    @property
    def average_response_time(self) -> float:
        if self.total_answers == 0:
            return 0.0
        return self.total_response_time / self.total_answers

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED


class SessionMeta(BaseModel):
    """Quiz-instance level state"""
    quiz_id: str
    status: str = SESSION_ACTIVE
    end_time: Optional[int] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None

    @property
    def is_finished(self) -> bool:
        return self.status == SESSION_FINISHED


class LeaderboardSnapshot(BaseModel):
    """Last ranking written for a quiz; source of previous positions"""
    quiz_id: str
    positions: Dict[str, int] = Field(default_factory=dict)
    entries: List[Dict[str, Any]] = Field(default_factory=list)
    updated_at: Optional[int] = None
