import threading
from datetime import timedelta

import pytest

from quiz_engine.exceptions import CatalogLookupError
from quiz_engine.services.attempt_ledger import (
    ALREADY_CORRECT,
    INVALID_INPUT,
    MAX_ATTEMPTS_REACHED,
    QUIZ_CLOSED,
)
from quiz_engine.services.event_service import ANSWER_RESULT, PARTICIPANT_COMPLETED, ROUND_TOP_FINISHER
from quiz_engine.store.documents import participant_path

QUIZ_ID = "quiz-1"


def test_first_correct_answer_is_scored(engine, submit):
    result = submit("u1", "q1", "a", 3000)

    assert result.accepted
    assert result.points == 190
    assert result.attempt_index == 1
    assert result.is_correct
    assert result.total_score == 190
    assert not result.completed


def test_correct_answer_locks_question(engine, submit, store):
    submit("u1", "q1", "a")
    before = store.get_versioned(participant_path(QUIZ_ID, "u1"))

    result = submit("u1", "q1", "a")

    assert not result.accepted
    assert result.reason == ALREADY_CORRECT
    assert store.get_versioned(participant_path(QUIZ_ID, "u1")) == before


def test_third_attempt_is_rejected(engine, submit):
    assert submit("u1", "q1", "z").accepted
    second = submit("u1", "q1", "y")
    third = submit("u1", "q1", "a")

    assert second.accepted and second.attempt_index == 2
    assert not third.accepted
    assert third.reason == MAX_ATTEMPTS_REACHED


def test_retry_replaces_first_attempt_in_totals(engine, submit):
    submit("u1", "q2", "wrong", 2000)
    retry = submit("u1", "q2", "b", 4000)

    participant = engine.sessions.get_participant(QUIZ_ID, "u1")
    answer = participant.answers["q2"]
    assert retry.points == 95
    assert answer.attempts == 2
    assert [a.attempt_index for a in answer.attempt_history] == [1, 2]
    assert answer.is_correct and answer.points_earned == 95
    assert participant.current_score == 95
    assert participant.correct_answers == 1
    assert participant.total_answers == 1


def test_streak_resets_on_wrong_answer(engine, submit):
    submit("u1", "r1", "x", 9000, quiz_id="race-1")
    submit("u1", "r2", "x", 9000, quiz_id="race-1")
    submit("u1", "r3", "nope", 9000, quiz_id="race-1")

    participant = engine.sessions.get_participant("race-1", "u1")
    assert participant.current_streak == 0


def test_streak_bonus_after_four_correct(engine, submit):
    for qid in ["r1", "r2", "r3", "r4"]:
        submit("u1", qid, "x", 9000, quiz_id="race-1")

    fifth = submit("u1", "r5", "x", 9000, quiz_id="race-1")

    # medium base 150 + streak bonus for 4 prior correct
    assert fifth.breakdown["streak"] == 4
    assert fifth.points == 165


@pytest.mark.parametrize("kwargs", [
    {"user_id": ""},
    {"user_id": "a/b"},
    {"question_id": None},
    {"answer_id": ""},
    {"response_time_ms": -1},
    {"response_time_ms": 30001},
    {"response_time_ms": "fast"},
    {"response_time_ms": True},
])
def test_invalid_input_rejected_without_writes(engine, store, kwargs):
    args = {"user_id": "u1", "question_id": "q1", "answer_id": "a", "response_time_ms": 1000}
    args.update(kwargs)

    result = engine.ledger.submit_answer(QUIZ_ID, **args)

    assert not result.accepted
    assert result.reason == INVALID_INPUT
    assert store.read_tree("sessions") == {}


def test_response_time_bounds_are_inclusive(engine, submit):
    assert submit("u1", "q1", "a", 0).accepted
    assert submit("u1", "q2", "b", 30000).accepted


def test_unknown_question_raises_catalog_error(engine, submit):
    with pytest.raises(CatalogLookupError):
        submit("u1", "q404", "a")


def test_unknown_quiz_raises_catalog_error(engine, submit):
    with pytest.raises(CatalogLookupError):
        submit("u1", "q1", "a", quiz_id="missing")


def test_answering_every_question_completes_and_dispatches(engine, submit, dispatcher, store):
    submit("u1", "q2", "b")
    last = submit("u1", "q1", "a")

    participant = engine.sessions.get_participant(QUIZ_ID, "u1")
    assert last.completed
    assert participant.status == "completed"
    assert participant.completed_at is not None

    _, version = store.get_versioned(participant_path(QUIZ_ID, "u1"))
    assert dispatcher.participants == [
        (QUIZ_ID, "u1", {participant_path(QUIZ_ID, "u1"): version})
    ]


def test_completion_after_wrong_answers(engine, submit):
    submit("u1", "q1", "x")
    result = submit("u1", "q2", "x")

    assert result.completed


def test_finished_session_rejects_answers(engine, submit):
    submit("u1", "q1", "a")
    engine.sessions.finish(QUIZ_ID)

    result = submit("u1", "q2", "b")

    assert not result.accepted
    assert result.reason == QUIZ_CLOSED


def test_expired_quiz_rejects_answers(engine, submit, catalog, clock):
    catalog.add_quiz("timed", [{"question_id": "t1", "correct_answer": "a"}], end_time=clock() + timedelta(minutes=1))
    assert submit("u1", "t1", "z", quiz_id="timed").accepted

    clock.advance(timedelta(minutes=2))
    result = submit("u1", "t1", "a", quiz_id="timed")

    assert result.reason == QUIZ_CLOSED


def test_events_published_for_accepted_answer(engine, submit, bus):
    submit("u1", "q1", "a", 3000)

    answer_events = bus.events(ANSWER_RESULT, channel=f"quiz:{QUIZ_ID}:u1")
    assert len(answer_events) == 1
    assert answer_events[0]["data"]["points_earned"] == 190
    assert answer_events[0]["data"]["total_score"] == 190
    assert bus.events("leaderboard-update", channel=f"quiz:{QUIZ_ID}")


def test_rejected_answer_publishes_nothing(engine, submit, bus):
    submit("u1", "q1", "a")
    count = len(bus.published)

    submit("u1", "q1", "a")

    assert len(bus.published) == count


def test_broadcast_failure_does_not_fail_submission(engine, submit, bus):
    def explode(channel, event, payload):
        raise ConnectionError("socket closed")

    bus.subscribe(f"quiz:{QUIZ_ID}", explode)
    bus.subscribe(f"quiz:{QUIZ_ID}:u1", explode)

    result = submit("u1", "q1", "a")

    assert result.accepted
    assert engine.sessions.get_participant(QUIZ_ID, "u1").current_score == 190


def test_top_finishers_are_celebrated(engine, submit, bus, clock):
    for user in ["u1", "u2", "u3", "u4"]:
        submit(user, "q1", "a")
        submit(user, "q2", "b")
        clock.advance(timedelta(seconds=1))

    celebrations = bus.events(ROUND_TOP_FINISHER)
    assert [e["data"]["user_id"] for e in celebrations] == ["u1", "u2", "u3"]
    assert [e["data"]["celebration_type"] for e in celebrations] == ["gold", "silver", "bronze"]
    assert len(bus.events(PARTICIPANT_COMPLETED)) == 4


def test_concurrent_submissions_for_different_questions(engine, catalog):
    questions = [{"question_id": f"c{i}", "difficulty": "easy", "correct_answer": "ok"} for i in range(12)]
    catalog.add_quiz("burst", questions)
    engine.sessions.join("burst", "u1")
    errors = []

    def answer(question_id):
        try:
            result = engine.ledger.submit_answer("burst", "u1", question_id, "ok", 9000)
            assert result.accepted
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=answer, args=(q["question_id"],)) for q in questions]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    participant = engine.sessions.get_participant("burst", "u1")
    assert errors == []
    assert participant.total_answers == 12
    assert participant.correct_answers == 12
    assert participant.status == "completed"


def test_racing_submissions_for_same_question_accept_once(engine):
    engine.sessions.join(QUIZ_ID, "u1")
    results = []
    barrier = threading.Barrier(8)

    def answer():
        barrier.wait()
        results.append(engine.ledger.submit_answer(QUIZ_ID, "u1", "q1", "a", 1000))

    threads = [threading.Thread(target=answer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    accepted = [r for r in results if r.accepted]
    assert len(accepted) == 1
    assert all(r.reason == ALREADY_CORRECT for r in results if not r.accepted)
    assert engine.sessions.get_participant(QUIZ_ID, "u1").answers["q1"].attempts == 1
