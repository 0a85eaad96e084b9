"""
Invariant checks over stored ephemeral and durable quiz data

Used by the ops CLI, the validation endpoint and the test-suite.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from quiz_engine.models import QuestionAttempt
from quiz_engine.repository import QuizRepository
from quiz_engine.services.catalog_service import Catalog, QuizInfo
from quiz_engine.services.scoring_service import ScoringEngine
from quiz_engine.services.sync_service import (
    latest_attempts,
    normalize_score,
    summarize_latest_attempts,
)
from quiz_engine.store.doc_store import KeyValueDocStore
from quiz_engine.store.documents import (
    Participant,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    participant_path,
    participants_path,
)

logger = logging.getLogger(__name__)

ATTEMPT_INDEX_RANGE = "attempt_index_range"
RETRY_AFTER_INCORRECT = "retry_requires_incorrect_first"
NO_ATTEMPT_AFTER_CORRECT = "no_attempt_after_correct"
HISTORY_MATCHES_MIRROR = "history_matches_mirror"
AGGREGATES_FROM_LATEST = "aggregates_from_latest"
SCORE_REDERIVABLE = "score_rederivable"
RESULT_FROM_LATEST = "result_from_latest_attempts"
NORMALIZED_SCORE = "normalized_score"
STATUS_MONOTONIC = "status_monotonic"
UNIQUE_DURABLE_ROWS = "unique_durable_rows"
UNANSWERED_FORMAT = "unanswered_row_format"
COMPLETED_COVERAGE = "completed_covers_all_questions"
EPHEMERAL_DURABLE_MATCH = "ephemeral_matches_durable"

SCORE_TOLERANCE = 1e-6


@dataclass
class Violation:
    invariant: str
    message: str
    user_id: Optional[str] = None
    question_id: Optional[str] = None


@dataclass
class ValidationReport:
    quiz_id: str
    user_id: Optional[str] = None
    violations: List[Violation] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.violations

    def add(self, invariant: str, message: str, user_id: str = None, question_id: str = None) -> None:
        self.violations.append(Violation(invariant, message, user_id, question_id))

    def merge(self, other: "ValidationReport") -> "ValidationReport":
        self.violations.extend(other.violations)
        for key, value in other.summary.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self.summary[key] = self.summary.get(key, 0) + value
            else:
                self.summary.setdefault(key, value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quiz_id": self.quiz_id,
            "user_id": self.user_id,
            "valid": self.valid,
            "violations": [asdict(v) for v in self.violations],
            "summary": self.summary,
        }


def attempt_row_dict(row: QuestionAttempt) -> Dict[str, Any]:
    return {
        "user_id": row.user_id,
        "question_id": row.question_id,
        "quiz_id": row.quiz_id,
        "attempt_index": row.attempt_index,
        "selected_answer": row.selected_answer,
        "is_correct": bool(row.is_correct),
        "time_spent": row.time_spent,
        "points_earned": row.points_earned or 0,
        "scoring_breakdown": row.scoring_breakdown or {},
        "unanswered": bool(row.unanswered),
    }


class DataValidator:
    """
    Re-derives the engine's invariants from what is actually stored

    Checks:
    - attempt indexes are 1 or 2, and a retry only follows a wrong answer
    - nothing is recorded after a correct attempt
    - attempt history and the latest-answer mirror agree
    - participant totals and durable results come from the latest attempts
    - every stored breakdown re-derives to its points
    - completed never reverts and completed users cover every question
    - durable rows are unique per attempt
    """

    def __init__(
        self,
        store: KeyValueDocStore,
        session_factory,
        catalog: Catalog,
        scoring: ScoringEngine
    ):
        self.store = store
        self.session_factory = session_factory
        self.catalog = catalog
        self.scoring = scoring

    # Loading

    def _participant(self, quiz_id: str, user_id: str) -> Optional[Participant]:
        doc = self.store.get(participant_path(quiz_id, user_id))
        return Participant.model_validate(doc) if doc else None

    def _durable(self, quiz_id: str, user_id: str):
        with self.session_factory() as db:
            repo = QuizRepository(db)
            rows = [attempt_row_dict(row) for row in repo.list_attempts(quiz_id, user_id)]
            result = repo.get_result(quiz_id, user_id)
            result_data = None
            if result is not None:
                result_data = {
                    "score": result.score,
                    "status": result.status,
                    "raw_total_points": result.raw_total_points,
                    "max_points": result.max_points,
                    "bonuses_total": result.bonuses_total,
                }
        return rows, result_data

    def _potential_for(self, quiz: QuizInfo):
        def potential(row: Dict[str, Any]) -> int:
            breakdown = row.get("scoring_breakdown") or {}
            if "potential" in breakdown:
                return int(breakdown["potential"])
            return self.scoring.potential(quiz.question(row["question_id"]).difficulty)
        return potential

    # Shared attempt-sequence checks

    def _check_sequence(
        self,
        report: ValidationReport,
        user_id: str,
        question_id: str,
        attempts: List[Dict[str, Any]]
    ) -> None:
        """`attempts` ordered by attempt_index, each with attempt_index and is_correct"""
        for attempt in attempts:
            if attempt["attempt_index"] not in (1, 2):
                report.add(
                    ATTEMPT_INDEX_RANGE,
                    f"attempt_index {attempt['attempt_index']} outside 1..2",
                    user_id, question_id
                )

        indexes = [a["attempt_index"] for a in attempts]
        if 2 in indexes:
            first = next((a for a in attempts if a["attempt_index"] == 1), None)
            if first is None:
                report.add(RETRY_AFTER_INCORRECT, "attempt 2 without attempt 1", user_id, question_id)
            elif first["is_correct"]:
                report.add(RETRY_AFTER_INCORRECT, "attempt 2 after a correct attempt 1", user_id, question_id)

        for position, attempt in enumerate(attempts[:-1]):
            if attempt["is_correct"]:
                report.add(
                    NO_ATTEMPT_AFTER_CORRECT,
                    f"{len(attempts) - position - 1} attempt(s) recorded after a correct answer",
                    user_id, question_id
                )
                break

    def _check_rederive(
        self,
        report: ValidationReport,
        user_id: str,
        question_id: str,
        breakdown: Dict[str, Any],
        is_correct: bool,
        response_time_ms: int,
        points: int
    ) -> None:
        if not breakdown:
            return
        expected = self.scoring.rederive(breakdown, is_correct, response_time_ms).total
        if expected != points:
            report.add(
                SCORE_REDERIVABLE,
                f"stored {points} points, breakdown re-derives to {expected}",
                user_id, question_id
            )

    # Public checks

    def validate_ephemeral(self, quiz_id: str, user_id: str) -> ValidationReport:
        report = ValidationReport(quiz_id=quiz_id, user_id=user_id)
        participant = self._participant(quiz_id, user_id)
        report.summary["ephemeral_present"] = participant is not None
        if participant is None:
            return report

        quiz = self.catalog.get_quiz(quiz_id)
        report.summary["ephemeral_questions"] = len(participant.answers)

        for question_id, answer in sorted(participant.answers.items()):
            history = answer.attempt_history
            self._check_sequence(
                report, user_id, question_id,
                [{"attempt_index": a.attempt_index, "is_correct": a.is_correct} for a in history]
            )
            if [a.attempt_index for a in history] != list(range(1, len(history) + 1)):
                report.add(ATTEMPT_INDEX_RANGE, "attempt indexes are not consecutive from 1", user_id, question_id)

            if answer.attempts != len(history):
                report.add(
                    HISTORY_MATCHES_MIRROR,
                    f"attempts={answer.attempts} but history has {len(history)} entries",
                    user_id, question_id
                )

            latest = answer.latest()
            if latest is not None:
                mirror = (answer.answer_id, answer.is_correct, answer.response_time, answer.points_earned)
                actual = (latest.answer_id, latest.is_correct, latest.response_time_ms, latest.points_earned)
                if mirror != actual:
                    report.add(
                        HISTORY_MATCHES_MIRROR,
                        f"latest fields {mirror} differ from last attempt {actual}",
                        user_id, question_id
                    )

            for attempt in history:
                self._check_rederive(
                    report, user_id, question_id, attempt.scoring_breakdown,
                    attempt.is_correct, attempt.response_time_ms, attempt.points_earned
                )

        expected = participant.model_copy(deep=True)
        expected.recompute_aggregates()
        for name in ("current_score", "correct_answers", "total_answers"):
            stored, derived = getattr(participant, name), getattr(expected, name)
            if stored != derived:
                report.add(
                    AGGREGATES_FROM_LATEST,
                    f"{name}={stored} but latest attempts give {derived}",
                    user_id
                )

        if participant.status not in (STATUS_IN_PROGRESS, STATUS_COMPLETED):
            report.add(STATUS_MONOTONIC, f"unknown status '{participant.status}'", user_id)
        if participant.status == STATUS_COMPLETED and participant.completed_at is None:
            report.add(STATUS_MONOTONIC, "completed without completed_at", user_id)
        if participant.status != STATUS_COMPLETED and expected.total_answers >= quiz.total_questions > 0:
            report.add(
                STATUS_MONOTONIC,
                f"answered {expected.total_answers}/{quiz.total_questions} but still {participant.status}",
                user_id
            )
        return report

    def validate_durable(self, quiz_id: str, user_id: str) -> ValidationReport:
        report = ValidationReport(quiz_id=quiz_id, user_id=user_id)
        rows, result = self._durable(quiz_id, user_id)
        report.summary["durable_rows"] = len(rows)
        report.summary["durable_result_present"] = result is not None
        if not rows and result is None:
            return report

        quiz = self.catalog.get_quiz(quiz_id)

        keys = defaultdict(int)
        by_question = defaultdict(list)
        for row in rows:
            keys[(row["question_id"], row["attempt_index"])] += 1
            by_question[row["question_id"]].append(row)
        for (question_id, attempt_index), count in sorted(keys.items()):
            if count > 1:
                report.add(
                    UNIQUE_DURABLE_ROWS,
                    f"{count} rows for attempt {attempt_index}",
                    user_id, question_id
                )

        answered_rows = []
        for question_id, question_rows in sorted(by_question.items()):
            question_rows.sort(key=lambda r: r["attempt_index"])
            self._check_sequence(report, user_id, question_id, question_rows)

            for row in question_rows:
                if row["unanswered"]:
                    if (row["selected_answer"] is not None or row["is_correct"]
                            or row["points_earned"] != 0 or row["attempt_index"] != 1):
                        report.add(
                            UNANSWERED_FORMAT,
                            "unanswered row must have no answer, be incorrect, score 0, attempt 1",
                            user_id, question_id
                        )
                    continue
                answered_rows.append(row)
                self._check_rederive(
                    report, user_id, question_id, row["scoring_breakdown"],
                    row["is_correct"], row["time_spent"] or 0, row["points_earned"]
                )

        if result is None:
            return report

        totals = summarize_latest_attempts(answered_rows, self._potential_for(quiz))
        report.summary["raw_total_points"] = totals.raw_total
        report.summary["max_points"] = totals.max_points

        if result["raw_total_points"] != totals.raw_total:
            every_attempt = sum(row["points_earned"] for row in answered_rows)
            report.add(
                RESULT_FROM_LATEST,
                f"raw_total_points={result['raw_total_points']} but latest attempts sum to "
                f"{totals.raw_total} (all attempts: {every_attempt})",
                user_id
            )
        if result["max_points"] != totals.max_points:
            report.add(
                RESULT_FROM_LATEST,
                f"max_points={result['max_points']} but latest attempts give {totals.max_points}",
                user_id
            )

        expected_score = normalize_score(result["raw_total_points"], result["max_points"])
        if result["max_points"] and abs(result["score"] - expected_score) > SCORE_TOLERANCE:
            report.add(
                NORMALIZED_SCORE,
                f"score={result['score']} but raw/max normalizes to {expected_score}",
                user_id
            )
        if not 0 <= result["score"] <= 10:
            report.add(NORMALIZED_SCORE, f"score {result['score']} outside [0, 10]", user_id)

        if result["status"] == STATUS_COMPLETED:
            missing = [qid for qid in quiz.question_ids if qid not in by_question]
            if missing:
                report.add(
                    COMPLETED_COVERAGE,
                    f"completed but no rows for {', '.join(missing)}",
                    user_id
                )
        elif result["status"] != STATUS_IN_PROGRESS:
            report.add(STATUS_MONOTONIC, f"unknown result status '{result['status']}'", user_id)
        return report

    def validate_consistency(self, quiz_id: str, user_id: str) -> ValidationReport:
        """Compare the live participant with what has been synced so far"""
        report = ValidationReport(quiz_id=quiz_id, user_id=user_id)
        participant = self._participant(quiz_id, user_id)
        rows, result = self._durable(quiz_id, user_id)
        if participant is None or (not rows and result is None):
            return report

        ephemeral = {}
        for question_id, answer in participant.answers.items():
            for attempt in answer.attempt_history:
                ephemeral[(question_id, attempt.attempt_index)] = attempt

        for row in rows:
            if row["unanswered"]:
                if row["question_id"] in participant.answers:
                    report.add(
                        EPHEMERAL_DURABLE_MATCH,
                        "question marked unanswered but has live attempts",
                        user_id, row["question_id"]
                    )
                continue
            attempt = ephemeral.get((row["question_id"], row["attempt_index"]))
            if attempt is None:
                report.add(
                    EPHEMERAL_DURABLE_MATCH,
                    f"durable attempt {row['attempt_index']} missing from the live session",
                    user_id, row["question_id"]
                )
            elif (attempt.is_correct, attempt.points_earned) != (row["is_correct"], row["points_earned"]):
                report.add(
                    EPHEMERAL_DURABLE_MATCH,
                    f"attempt {row['attempt_index']} differs: live ({attempt.is_correct}, "
                    f"{attempt.points_earned}) durable ({row['is_correct']}, {row['points_earned']})",
                    user_id, row["question_id"]
                )

        if result is not None and result["status"] == STATUS_COMPLETED and participant.status != STATUS_COMPLETED:
            report.add(STATUS_MONOTONIC, "durable result completed but live participant is not", user_id)

        durable_latest = latest_attempts(r for r in rows if not r["unanswered"])
        report.summary["synced_questions"] = len(durable_latest)
        return report

    def validate_participant(self, quiz_id: str, user_id: str) -> ValidationReport:
        report = self.validate_ephemeral(quiz_id, user_id)
        report.merge(self.validate_durable(quiz_id, user_id))
        report.merge(self.validate_consistency(quiz_id, user_id))
        return report

    def user_ids(self, quiz_id: str) -> List[str]:
        users = set(
            path for path in self.store.read_tree(participants_path(quiz_id)) if "/" not in path
        )
        with self.session_factory() as db:
            repo = QuizRepository(db)
            users.update(repo.durable_user_ids(quiz_id))
            users.update(row.user_id for row in repo.list_attempts(quiz_id))
        return sorted(users)

    def validate_quiz(self, quiz_id: str) -> ValidationReport:
        report = ValidationReport(quiz_id=quiz_id)
        users = self.user_ids(quiz_id)
        for user_id in users:
            report.violations.extend(self.validate_participant(quiz_id, user_id).violations)
        report.summary["users"] = len(users)
        report.summary["violations"] = len(report.violations)

        if report.valid:
            logger.info(f"Validation passed for quiz {quiz_id} ({len(users)} users)")
        else:
            logger.warning(f"Validation found {len(report.violations)} violations in quiz {quiz_id}")
        return report
