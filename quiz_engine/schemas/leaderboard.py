"""
Pydantic schemas for leaderboard responses
"""
from pydantic import BaseModel
from typing import List, Optional


class LeaderboardEntryResponse(BaseModel):
    """One ranked participant"""
    position: int
    previous_position: int
    movement: int
    user_id: str
    score: int
    correct_answers: int
    total_answers: int
    accuracy: float
    status: str
    average_response_time: float
    last_answer_time: Optional[int] = None

    class Config:
        from_attributes = True


class LeaderboardResponse(BaseModel):
    quiz_id: str
    total_participants: int
    entries: List[LeaderboardEntryResponse]
