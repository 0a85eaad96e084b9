"""
Pydantic schemas for session and answer requests and responses
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class JoinRequest(BaseModel):
    """Request schema for joining a quiz session"""
    user_id: str = Field(..., min_length=1, description="Participant id")


class AnswerSubmission(BaseModel):
    """
    Schema for one answer submission

    Untyped fields: the ledger checks them and rejects with `invalid_input`.
    """
    user_id: Any = None
    question_id: Any = None
    answer_id: Any = None
    response_time_ms: Any = None


class AnswerResult(BaseModel):
    """Accepted submission"""
    accepted: bool = True
    quiz_id: str
    user_id: str
    question_id: str
    points: int
    is_correct: bool
    attempt_index: int
    total_score: int
    completed: bool
    breakdown: Dict[str, Any]

    class Config:
        from_attributes = True


class RejectedAttemptResponse(BaseModel):
    """Rejected submission; nothing was written"""
    accepted: bool = False
    reason: str
    message: str


class AttemptResponse(BaseModel):
    attempt_index: int
    answer_id: str
    is_correct: bool
    response_time_ms: int
    points_earned: int
    scoring_breakdown: Dict[str, Any]
    timestamp: int


class AnswerResponse(BaseModel):
    answer_id: Optional[str] = None
    is_correct: bool
    response_time: int
    points_earned: int
    attempts: int
    attempt_history: List[AttemptResponse]


class ParticipantResponse(BaseModel):
    """Live participant state"""
    user_id: str
    current_score: int
    correct_answers: int
    total_answers: int
    current_streak: int
    status: str
    joined_at: Optional[int] = None
    completed_at: Optional[int] = None
    last_answer_time: Optional[int] = None
    answers: Dict[str, AnswerResponse] = {}

    class Config:
        from_attributes = True


class SessionMetaResponse(BaseModel):
    quiz_id: str
    status: str
    end_time: Optional[int] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None

    class Config:
        from_attributes = True


class SessionResponse(BaseModel):
    """Snapshot of an ephemeral session"""
    quiz_id: str
    meta: Optional[SessionMetaResponse] = None
    participants: Dict[str, ParticipantResponse]
