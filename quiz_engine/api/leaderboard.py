"""
Leaderboard API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
import logging

from quiz_engine.container import Container, get_container
from quiz_engine.schemas.leaderboard import LeaderboardEntryResponse, LeaderboardResponse

router = APIRouter(prefix="/api/quizzes", tags=["leaderboard"])
logger = logging.getLogger(__name__)


@router.get("/{quiz_id}/leaderboard", response_model=LeaderboardResponse)
def get_leaderboard(quiz_id: str, engine: Container = Depends(get_container)):
    """
    Live ranking of a quiz

    Ordered by score, then correct answers, accuracy, completion, average
    response time and last answer time. Movement is measured against the
    last broadcast ranking.
    """
    try:
        entries = engine.leaderboard.get_leaderboard(quiz_id)
        return LeaderboardResponse(
            quiz_id=quiz_id,
            total_participants=len(entries),
            entries=[LeaderboardEntryResponse(**entry.to_dict()) for entry in entries],
        )

    except Exception as e:
        logger.error(f"Failed to build leaderboard for quiz {quiz_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Failed to build leaderboard: {str(e)}")
