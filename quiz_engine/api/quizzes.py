"""
Quiz session and answer submission API endpoints

Endpoints are plain functions so FastAPI runs them in its threadpool and
submissions from many participants are handled concurrently.
"""
from fastapi import APIRouter, Depends, HTTPException
import logging

from quiz_engine.container import Container, get_container
from quiz_engine.exceptions import QuizEngineError
from quiz_engine.schemas.quiz import (
    AnswerResult,
    AnswerSubmission,
    JoinRequest,
    ParticipantResponse,
    SessionMetaResponse,
    SessionResponse,
)
from quiz_engine.services.attempt_ledger import INVALID_INPUT

router = APIRouter(prefix="/api/quizzes", tags=["quizzes"])
logger = logging.getLogger(__name__)


@router.post("/{quiz_id}/join", response_model=ParticipantResponse)
def join_quiz(
    quiz_id: str,
    request: JoinRequest,
    engine: Container = Depends(get_container)
):
    """
    Join a quiz session

    - Creates the session from the catalog on first use
    - Idempotent: joining twice returns the existing participant
    - 409 when a new participant tries to join a closed quiz
    """
    try:
        participant = engine.sessions.join(quiz_id, request.user_id)
        return ParticipantResponse(**participant.model_dump())

    except QuizEngineError:
        raise
    except Exception as e:
        logger.error(f"Failed to join quiz {quiz_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Failed to join quiz: {str(e)}")


@router.post("/{quiz_id}/answers", response_model=AnswerResult)
def submit_answer(
    quiz_id: str,
    submission: AnswerSubmission,
    engine: Container = Depends(get_container)
):
    """
    Submit one answer

    Attempt policy:
    - A correctly answered question takes no more attempts
    - At most two attempts per question, the second at half points

    Returns the scored attempt, 409 for a rejected attempt and 422 for
    invalid input. Rejections never change any state.
    """
    result = engine.ledger.submit_answer(
        quiz_id,
        submission.user_id,
        submission.question_id,
        submission.answer_id,
        submission.response_time_ms,
    )

    if not result.accepted:
        status_code = 422 if result.reason == INVALID_INPUT else 409
        raise HTTPException(
            status_code=status_code,
            detail={"reason": result.reason, "message": result.message}
        )

    return AnswerResult(
        quiz_id=result.quiz_id,
        user_id=result.user_id,
        question_id=result.question_id,
        points=result.points,
        is_correct=result.is_correct,
        attempt_index=result.attempt_index,
        total_score=result.total_score,
        completed=result.completed,
        breakdown=result.breakdown,
    )


@router.post("/{quiz_id}/finish", response_model=SessionMetaResponse)
def finish_quiz(quiz_id: str, engine: Container = Depends(get_container)):
    """
    End the quiz for everyone

    Every participant becomes complete and reconciliation is dispatched in
    the background.
    """
    meta = engine.sessions.finish(quiz_id)
    return SessionMetaResponse(**meta.model_dump())


@router.get("/{quiz_id}/session", response_model=SessionResponse)
def get_session(quiz_id: str, engine: Container = Depends(get_container)):
    """Current ephemeral state of a quiz; 404 once it has been reconciled away"""
    snapshot = engine.sessions.snapshot(quiz_id)
    if snapshot["meta"] is None and not snapshot["participants"]:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionResponse(**snapshot)
