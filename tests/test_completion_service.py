from datetime import datetime, timedelta, timezone

import pytest

from quiz_engine.services.completion_service import CompletionDetector
from quiz_engine.store.documents import AnswerRecord, AttemptRecord, Participant
from quiz_engine.utils.clock import to_ms

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def participant_with(question_ids, status="in_progress"):
    participant = Participant(user_id="u1", status=status)
    for question_id in question_ids:
        answer = AnswerRecord()
        answer.record(AttemptRecord(
            attempt_index=1,
            answer_id="x",
            is_correct=False,
            response_time_ms=1000,
            points_earned=0,
            timestamp=to_ms(NOW),
        ))
        participant.answers[question_id] = answer
    participant.recompute_aggregates()
    return participant


@pytest.fixture
def detector():
    return CompletionDetector()


def test_all_questions_answered_in_any_order(detector):
    assert detector.is_complete(3, participant_with(["q3", "q1", "q2"]), "active", None, NOW)


def test_partial_answers_are_not_complete(detector):
    assert not detector.is_complete(3, participant_with(["q1", "q2"]), "active", None, NOW)


def test_finished_session_completes_everyone(detector):
    assert detector.is_complete(3, participant_with([]), "finished", None, NOW)


def test_end_time_passed(detector):
    ended = to_ms(NOW - timedelta(seconds=1))
    upcoming = to_ms(NOW + timedelta(seconds=1))

    assert detector.is_complete(3, participant_with([]), "active", ended, NOW)
    assert not detector.is_complete(3, participant_with([]), "active", upcoming, NOW)


def test_empty_answer_record_does_not_count(detector):
    participant = participant_with(["q1"])
    participant.answers["q2"] = AnswerRecord()

    assert not detector.is_complete(2, participant, "active", None, NOW)


def test_stale_in_progress_is_corrected(detector):
    status, corrected = detector.reconcile_status(2, participant_with(["q1", "q2"]), "active", None, NOW)

    assert status == "completed"
    assert corrected


def test_completed_never_reverts(detector):
    stored = participant_with(["q1"], status="completed")

    status, corrected = detector.reconcile_status(5, stored, "active", None, NOW)

    assert status == "completed"
    assert not corrected


def test_in_progress_stays_in_progress(detector):
    status, corrected = detector.reconcile_status(5, participant_with(["q1"]), "active", None, NOW)

    assert (status, corrected) == ("in_progress", False)
