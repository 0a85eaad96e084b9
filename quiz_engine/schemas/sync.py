"""
Pydantic schemas for reconciliation, validation and durable results
"""
from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, List, Optional


class SyncReportResponse(BaseModel):
    """Outcome of one reconciliation run"""
    quiz_id: str
    success: bool
    participants_processed: int
    attempts_written: int
    unanswered_written: int
    status_corrected: int
    errors: int
    failed_users: List[str]
    reason: Optional[str] = None
    session_deleted: bool
    duration_ms: int


class ViolationResponse(BaseModel):
    invariant: str
    message: str
    user_id: Optional[str] = None
    question_id: Optional[str] = None


class ValidationReportResponse(BaseModel):
    quiz_id: str
    user_id: Optional[str] = None
    valid: bool
    violations: List[ViolationResponse]
    summary: Dict[str, Any]


class QuizResultResponse(BaseModel):
    """Durable per-user result"""
    user_id: str
    quiz_id: str
    score: float
    status: str
    raw_total_points: int
    max_points: int
    bonuses_total: int
    completion_time: Optional[int] = None
    synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TopicPerformanceResponse(BaseModel):
    topic: str
    total_attempts: int
    correct_answers: int
    accuracy: float

    class Config:
        from_attributes = True


class QuizResultsResponse(BaseModel):
    quiz_id: str
    results: List[QuizResultResponse]
