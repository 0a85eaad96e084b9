"""
Reconciliation, validation and durable result API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
import logging

from quiz_engine.container import Container, get_container
from quiz_engine.repository import QuizRepository
from quiz_engine.schemas.sync import (
    QuizResultResponse,
    QuizResultsResponse,
    SyncReportResponse,
    ValidationReportResponse,
)
from quiz_engine.services.sync_service import LOCKED

router = APIRouter(prefix="/api/quizzes", tags=["sync"])
logger = logging.getLogger(__name__)


@router.post("/{quiz_id}/sync", response_model=SyncReportResponse)
def sync_quiz(quiz_id: str, engine: Container = Depends(get_container)):
    """
    Reconcile the live session into the database now

    - 423 when another reconciliation of the quiz holds the lock
    - Safe to repeat; rows are upserted
    """
    report = engine.sync.reconcile(quiz_id)

    if report.reason == LOCKED:
        raise HTTPException(status_code=423, detail=f"Reconciliation of quiz {quiz_id} already in progress")

    return SyncReportResponse(**report.to_dict())


@router.get("/{quiz_id}/validation", response_model=ValidationReportResponse)
def validate_quiz(
    quiz_id: str,
    user_id: Optional[str] = None,
    engine: Container = Depends(get_container)
):
    """Check stored live and durable data of a quiz (or one user) for invariant violations"""
    if user_id:
        report = engine.validator.validate_participant(quiz_id, user_id)
    else:
        report = engine.validator.validate_quiz(quiz_id)
    return ValidationReportResponse(**report.to_dict())


@router.get("/{quiz_id}/results", response_model=QuizResultsResponse)
def get_results(quiz_id: str, engine: Container = Depends(get_container)):
    """Reconciled results, best score first"""
    try:
        with engine.session_factory() as db:
            results = QuizRepository(db).list_results(quiz_id)
            return QuizResultsResponse(
                quiz_id=quiz_id,
                results=[QuizResultResponse.model_validate(result) for result in results],
            )

    except Exception as e:
        logger.error(f"Failed to fetch results for quiz {quiz_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch results: {str(e)}")
