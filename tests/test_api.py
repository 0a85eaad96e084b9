import pytest
from fastapi.testclient import TestClient

from quiz_engine.container import get_container
from quiz_engine.main import app
from quiz_engine.services.sync_service import SyncCoordinator

QUIZ_ID = "quiz-1"


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_container] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def answer(client, user_id, question_id, answer_id, response_time_ms=3000, quiz_id=QUIZ_ID):
    return client.post(f"/api/quizzes/{quiz_id}/answers", json={
        "user_id": user_id,
        "question_id": question_id,
        "answer_id": answer_id,
        "response_time_ms": response_time_ms,
    })


def play_worked_example(client, user_id="u1"):
    answer(client, user_id, "q1", "a", 3000)
    answer(client, user_id, "q2", "wrong", 2000)
    return answer(client, user_id, "q2", "b", 4000)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["checks"] == {"store": "ok"}
    assert "X-Response-Time-Ms" in response.headers


def test_health_degraded_when_store_fails(client, engine, monkeypatch):
    def broken(path):
        raise ConnectionError("store down")
    monkeypatch.setattr(engine.store, "get", broken)

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["checks"]["store"] == "unreachable"


def test_join(client):
    response = client.post(f"/api/quizzes/{QUIZ_ID}/join", json={"user_id": "u1"})

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == "u1"
    assert body["status"] == "in_progress"
    assert body["current_score"] == 0


def test_join_rejects_path_unsafe_user(client):
    response = client.post(f"/api/quizzes/{QUIZ_ID}/join", json={"user_id": "a.b"})

    assert response.status_code == 422
    assert response.json()["error"] == "invalid_input"


def test_join_unknown_quiz(client):
    response = client.post("/api/quizzes/missing/join", json={"user_id": "u1"})

    assert response.status_code == 404
    assert response.json()["error"] == "catalog_lookup_failed"


def test_accepted_answer(client):
    response = answer(client, "u1", "q1", "a", 3000)

    assert response.status_code == 200
    body = response.json()
    assert body["accepted"] is True
    assert body["points"] == 190
    assert body["attempt_index"] == 1
    assert body["breakdown"]["speed_bonus"] == 40


def test_retry_answer_is_halved(client):
    last = play_worked_example(client)

    assert last.status_code == 200
    assert last.json()["points"] == 95
    assert last.json()["total_score"] == 285
    assert last.json()["completed"] is True


def test_rejected_attempt_is_conflict(client):
    answer(client, "u1", "q1", "a")

    response = answer(client, "u1", "q1", "a")

    assert response.status_code == 409
    assert response.json()["message"]["reason"] == "already_correct"


def test_invalid_response_time(client):
    response = answer(client, "u1", "q1", "a", 45000)

    assert response.status_code == 422
    assert response.json()["message"]["reason"] == "invalid_input"


def test_unknown_question(client):
    response = answer(client, "u1", "nope", "a")

    assert response.status_code == 404


def test_session_snapshot(client):
    answer(client, "u1", "q1", "a")
    client.post(f"/api/quizzes/{QUIZ_ID}/join", json={"user_id": "u2"})

    response = client.get(f"/api/quizzes/{QUIZ_ID}/session")

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["status"] == "active"
    assert sorted(body["participants"]) == ["u1", "u2"]
    assert body["participants"]["u1"]["answers"]["q1"]["attempts"] == 1


def test_missing_session(client):
    assert client.get(f"/api/quizzes/{QUIZ_ID}/session").status_code == 404


def test_leaderboard(client):
    answer(client, "u1", "q1", "a", 9000)
    answer(client, "u2", "q1", "a", 1000)

    response = client.get(f"/api/quizzes/{QUIZ_ID}/leaderboard")

    body = response.json()
    assert body["total_participants"] == 2
    assert [e["user_id"] for e in body["entries"]] == ["u2", "u1"]
    assert [e["position"] for e in body["entries"]] == [1, 2]


def test_finish_closes_quiz_and_dispatches_sync(client, dispatcher):
    answer(client, "u1", "q1", "a")

    response = client.post(f"/api/quizzes/{QUIZ_ID}/finish")

    assert response.status_code == 200
    assert response.json()["status"] == "finished"
    assert dispatcher.quizzes == [QUIZ_ID]
    assert answer(client, "u1", "q2", "b").json()["message"]["reason"] == "quiz_closed"


def test_join_closed_quiz(client):
    answer(client, "u1", "q1", "a")
    client.post(f"/api/quizzes/{QUIZ_ID}/finish")

    newcomer = client.post(f"/api/quizzes/{QUIZ_ID}/join", json={"user_id": "u2"})
    returning = client.post(f"/api/quizzes/{QUIZ_ID}/join", json={"user_id": "u1"})

    assert newcomer.status_code == 409
    assert newcomer.json()["error"] == "quiz_closed"
    assert returning.status_code == 200
    assert returning.json()["user_id"] == "u1"


def test_sync_then_results(client):
    play_worked_example(client)

    sync = client.post(f"/api/quizzes/{QUIZ_ID}/sync")
    results = client.get(f"/api/quizzes/{QUIZ_ID}/results")

    assert sync.status_code == 200
    assert sync.json()["attempts_written"] == 3
    assert results.status_code == 200
    result = results.json()["results"][0]
    assert result["user_id"] == "u1"
    assert result["score"] == pytest.approx(7.5)
    assert result["raw_total_points"] == 285
    assert result["max_points"] == 380


def test_sync_locked(client, lock):
    play_worked_example(client)
    lock.acquire(SyncCoordinator.lock_key(QUIZ_ID), 120)

    response = client.post(f"/api/quizzes/{QUIZ_ID}/sync")

    assert response.status_code == 423


def test_validation_endpoint(client):
    play_worked_example(client)
    client.post(f"/api/quizzes/{QUIZ_ID}/sync")

    quiz_report = client.get(f"/api/quizzes/{QUIZ_ID}/validation")
    user_report = client.get(f"/api/quizzes/{QUIZ_ID}/validation", params={"user_id": "u1"})

    assert quiz_report.json()["valid"] is True
    assert user_report.json()["valid"] is True
    assert user_report.json()["summary"]["durable_rows"] == 3
