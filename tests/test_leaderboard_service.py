from quiz_engine.services.leaderboard_service import finish_order, rank
from quiz_engine.store.documents import Participant

QUIZ_ID = "quiz-1"


def make(user_id, score, correct, total, status="in_progress", response_time=0, last_answer=None, completed_at=None):
    return Participant(
        user_id=user_id,
        current_score=score,
        correct_answers=correct,
        total_answers=total,
        total_response_time=response_time,
        status=status,
        last_answer_time=last_answer,
        completed_at=completed_at,
    )


def test_correct_answers_break_score_tie():
    a = make("A", 100, 5, 6)  # ~83%
    b = make("B", 100, 6, 7)  # ~86%

    entries = rank([a, b])

    assert [e.user_id for e in entries] == ["B", "A"]
    assert [e.position for e in entries] == [1, 2]


def test_full_tie_break_chain():
    participants = [
        make("by-id-2", 50, 2, 4, response_time=4000, last_answer=10),
        make("slow-last", 50, 2, 4, response_time=4000, last_answer=20),
        make("by-id-1", 50, 2, 4, response_time=4000, last_answer=10),
        make("slower", 50, 2, 4, response_time=8000, last_answer=1),
        make("completed", 50, 2, 4, status="completed", response_time=9000, last_answer=99),
        make("accurate", 50, 2, 2),
        make("more-correct", 50, 3, 6),
        make("top", 60, 0, 1),
    ]

    order = [e.user_id for e in rank(participants)]

    assert order == [
        "top",
        "more-correct",
        "accurate",
        "completed",
        "by-id-1",
        "by-id-2",
        "slow-last",
        "slower",
    ]


def test_never_answered_sorts_after_answered():
    entries = rank([make("idle", 0, 0, 0), make("early", 0, 0, 0, last_answer=5)])

    assert [e.user_id for e in entries] == ["early", "idle"]


def test_ranking_is_deterministic():
    participants = [make(f"u{i}", (i * 37) % 5 * 10, i % 3, 3, last_answer=i % 4) for i in range(20)]

    first = [e.to_dict() for e in rank(participants)]
    second = [e.to_dict() for e in rank(list(reversed(participants)))]

    assert first == second


def test_movement_against_previous_positions():
    entries = rank([make("A", 10, 1, 1), make("B", 20, 1, 1), make("C", 5, 1, 1)], {"A": 1, "B": 2})

    by_user = {e.user_id: e for e in entries}
    assert (by_user["B"].position, by_user["B"].previous_position, by_user["B"].movement) == (1, 2, 1)
    assert (by_user["A"].position, by_user["A"].movement) == (2, -1)
    assert (by_user["C"].previous_position, by_user["C"].movement) == (3, 0)


def test_finish_order_by_completion_time():
    participants = [
        make("late", 0, 0, 0, status="completed", completed_at=300),
        make("playing", 0, 0, 0),
        make("early", 0, 0, 0, status="completed", completed_at=100),
    ]

    assert finish_order(participants) == ["early", "late"]


def test_refresh_caches_positions_for_next_ranking(engine, submit, bus):
    submit("u1", "q1", "a", 9000)
    submit("u2", "q1", "a", 1000)

    update = bus.events("leaderboard-update")[-1]["data"]["leaderboard"]
    assert [(e["user_id"], e["position"], e["previous_position"]) for e in update] == [
        ("u2", 1, 1),
        ("u1", 2, 1),
    ]

    # Unchanged since the last refresh
    entries = engine.leaderboard.get_leaderboard(QUIZ_ID)
    assert [(e.user_id, e.movement) for e in entries] == [("u2", 0), ("u1", 0)]


def test_refresh_broadcasts_snapshot(engine, submit, bus):
    submit("u1", "q1", "a")

    update = bus.events("leaderboard-update")[-1]["data"]
    assert update["leaderboard"] == [
        {"user_id": "u1", "score": 190, "position": 1, "previous_position": 1}
    ]
