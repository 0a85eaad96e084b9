import pytest

from quiz_engine.exceptions import CatalogLookupError
from quiz_engine.models import Quiz
from quiz_engine.services.catalog_service import SqlCatalog, StaticCatalog


@pytest.fixture
def sql_catalog(session_factory):
    with session_factory() as db:
        db.add(Quiz(
            id="algebra-1",
            title="Algebra warm-up",
            questions=[
                {"question_id": "a1", "difficulty": "hard", "correct_answer": "4", "topic": "algebra"},
                {"question_id": "a2", "correct_answer": "x"},
            ],
        ))
        db.commit()
    return SqlCatalog(session_factory)


def test_sql_catalog_reads_questions(sql_catalog):
    quiz = sql_catalog.get_quiz("algebra-1")

    assert quiz.question_ids == ["a1", "a2"]
    assert quiz.status == "active"
    assert quiz.question("a2").difficulty == "medium"
    assert quiz.question("a2").topic == "general"


def test_sql_catalog_unknown_quiz(sql_catalog):
    with pytest.raises(CatalogLookupError):
        sql_catalog.get_quiz("missing")


def test_sql_catalog_mark_finished_persists(sql_catalog):
    assert sql_catalog.mark_finished("algebra-1")
    assert sql_catalog.mark_finished("algebra-1")

    assert sql_catalog.get_quiz("algebra-1").status == "finished"
    assert not sql_catalog.mark_finished("missing")


def test_static_catalog_mark_finished():
    catalog = StaticCatalog()
    catalog.add_quiz("q", [{"question_id": "x", "correct_answer": "y"}])

    assert catalog.mark_finished("q")
    assert catalog.get_quiz("q").status == "finished"
    assert not catalog.mark_finished("other")
