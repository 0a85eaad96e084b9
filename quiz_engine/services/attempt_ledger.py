"""
Answer submission ledger
Per-question attempt state machine over the ephemeral session store
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from quiz_engine.config import settings
from quiz_engine.services.catalog_service import Catalog, QuestionInfo, QuizInfo
from quiz_engine.services.completion_service import CompletionDetector
from quiz_engine.services.event_service import EventBroadcaster
from quiz_engine.services.leaderboard_service import LeaderboardService, finish_order
from quiz_engine.services.scoring_service import ScoringEngine
from quiz_engine.services.session_service import SessionService
from quiz_engine.store.doc_store import KeyValueDocStore, WriteAck
from quiz_engine.store.documents import (
    AnswerRecord,
    AttemptRecord,
    Participant,
    STATUS_COMPLETED,
    is_valid_key,
    participant_path,
)
from quiz_engine.utils.clock import Clock, to_ms, utcnow

logger = logging.getLogger(__name__)

ALREADY_CORRECT = "already_correct"
MAX_ATTEMPTS_REACHED = "max_attempts_reached"
INVALID_INPUT = "invalid_input"
QUIZ_CLOSED = "quiz_closed"


@dataclass
class Accepted:
    quiz_id: str
    user_id: str
    question_id: str
    points: int
    is_correct: bool
    attempt_index: int
    total_score: int
    completed: bool
    breakdown: Dict[str, Any] = field(default_factory=dict)
    accepted: bool = True


@dataclass
class Rejected:
    reason: str
    message: str
    accepted: bool = False


SubmissionResult = Union[Accepted, Rejected]


class AttemptLedger:
    """
    Accepts or rejects answer submissions

    Attempt policy:
    - a question answered correctly takes no further attempts
    - at most two attempts per question
    - the second attempt is scored with the retry penalty

    The whole check-score-write cycle runs inside one optimistic
    transaction on the participant document, so concurrent submissions for
    different questions by the same user cannot lose updates, and two
    racing submissions for the same question cannot both be accepted.
    """

    def __init__(
        self,
        store: KeyValueDocStore,
        catalog: Catalog,
        sessions: SessionService,
        scoring: ScoringEngine,
        completion: CompletionDetector,
        leaderboard: LeaderboardService,
        broadcaster: EventBroadcaster,
        dispatcher=None,
        clock: Clock = utcnow,
        max_attempts: int = None,
        max_response_time_ms: int = None,
        max_retries: int = None,
        top_finisher_count: int = None
    ):
        self.store = store
        self.catalog = catalog
        self.sessions = sessions
        self.scoring = scoring
        self.completion = completion
        self.leaderboard = leaderboard
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.clock = clock
        self.max_attempts = max_attempts or settings.MAX_ATTEMPTS
        self.max_response_time_ms = max_response_time_ms or settings.MAX_RESPONSE_TIME_MS
        self.max_retries = max_retries or settings.TRANSACTION_MAX_RETRIES
        self.top_finisher_count = top_finisher_count if top_finisher_count is not None else settings.TOP_FINISHER_COUNT

    def validate_input(
        self,
        quiz_id: Any,
        user_id: Any,
        question_id: Any,
        answer_id: Any,
        response_time_ms: Any
    ) -> Optional[Rejected]:
        """Reject malformed submissions before any state is read or written"""
        for name, value in (("quiz_id", quiz_id), ("user_id", user_id), ("question_id", question_id)):
            if not is_valid_key(value):
                return Rejected(INVALID_INPUT, f"Missing or invalid {name}")

        if answer_id is None or str(answer_id).strip() == "":
            return Rejected(INVALID_INPUT, "Missing answer_id")

        if isinstance(response_time_ms, bool) or not isinstance(response_time_ms, (int, float)):
            return Rejected(INVALID_INPUT, "response_time_ms must be a number")

        if response_time_ms < 0 or response_time_ms > self.max_response_time_ms:
            return Rejected(
                INVALID_INPUT,
                f"response_time_ms must be within [0, {self.max_response_time_ms}]"
            )
        return None

    def submit_answer(
        self,
        quiz_id: str,
        user_id: str,
        question_id: str,
        answer_id: str,
        response_time_ms: int
    ) -> SubmissionResult:
        """
        Record one answer submission

        Raises:
            CatalogLookupError: unknown quiz or question
            TransactionConflict: contention outlasted every retry
        """
        rejected = self.validate_input(quiz_id, user_id, question_id, answer_id, response_time_ms)
        if rejected:
            logger.info(f"Rejected submission quiz={quiz_id} user={user_id}: {rejected.message}")
            return rejected

        quiz = self.catalog.get_quiz(quiz_id)
        question = quiz.question(question_id)

        meta = self.sessions.ensure_session(quiz_id, quiz)
        if not self.sessions.is_open(meta):
            logger.info(f"Rejected submission quiz={quiz_id} user={user_id}: quiz closed")
            return Rejected(QUIZ_CLOSED, "Quiz is not accepting answers")

        answer_id = str(answer_id)
        response_time_ms = int(response_time_ms)
        is_correct = answer_id == question.correct_answer
        now = self.clock()
        now_ms = to_ms(now)

        # Filled in by the mutator; reset on every retry of the transaction
        outcome: Dict[str, Any] = {}

        def apply_attempt(current):
            outcome.clear()
            if current is None:
                participant = Participant(user_id=user_id, joined_at=now_ms)
            else:
                participant = Participant.model_validate(current)

            answer = participant.answers.get(question_id)
            if answer is not None and answer.is_correct:
                outcome["result"] = Rejected(ALREADY_CORRECT, "Question already answered correctly")
                return None

            previous_attempts = len(answer.attempt_history) if answer else 0
            if previous_attempts >= self.max_attempts:
                outcome["result"] = Rejected(
                    MAX_ATTEMPTS_REACHED,
                    f"All {self.max_attempts} attempts used for this question"
                )
                return None

            attempt_index = previous_attempts + 1
            breakdown = self.scoring.compute_score(
                question.difficulty,
                is_correct,
                response_time_ms,
                participant.current_streak,
                attempt_index,
            )

            if answer is None:
                answer = AnswerRecord()
            answer.record(AttemptRecord(
                attempt_index=attempt_index,
                answer_id=answer_id,
                is_correct=is_correct,
                response_time_ms=response_time_ms,
                points_earned=breakdown.total,
                scoring_breakdown=breakdown.to_dict(),
                timestamp=now_ms,
            ))
            participant.answers[question_id] = answer
            participant.current_streak = participant.current_streak + 1 if is_correct else 0
            participant.last_answer_time = now_ms
            participant.current_question_id = question_id
            participant.recompute_aggregates()

            flipped = False
            if participant.status != STATUS_COMPLETED and self.completion.is_complete(
                quiz.total_questions, participant, meta.status, meta.end_time, now
            ):
                participant.status = STATUS_COMPLETED
                participant.completed_at = now_ms
                flipped = True

            outcome["result"] = Accepted(
                quiz_id=quiz_id,
                user_id=user_id,
                question_id=question_id,
                points=breakdown.total,
                is_correct=is_correct,
                attempt_index=attempt_index,
                total_score=participant.current_score,
                completed=participant.status == STATUS_COMPLETED,
                breakdown=breakdown.to_dict(),
            )
            outcome["flipped"] = flipped
            outcome["participant"] = participant
            return participant.model_dump()

        ack = self.store.transact(participant_path(quiz_id, user_id), apply_attempt, self.max_retries)
        result = outcome["result"]

        if not ack.committed:
            logger.info(f"Rejected submission quiz={quiz_id} user={user_id} question={question_id}: {result.reason}")
            return result

        logger.info(
            f"Accepted attempt {result.attempt_index} quiz={quiz_id} user={user_id} "
            f"question={question_id} correct={is_correct} points={result.points} total={result.total_score}"
        )
        self._after_accept(quiz, question, result, outcome["participant"], outcome["flipped"], ack)
        return result

    def _after_accept(
        self,
        quiz: QuizInfo,
        question: QuestionInfo,
        result: Accepted,
        participant: Participant,
        flipped: bool,
        ack: WriteAck
    ) -> None:
        """Leaderboard, notifications and sync dispatch; none of it may fail the submission"""
        quiz_id, user_id = result.quiz_id, result.user_id

        self.broadcaster.answer_result(
            quiz_id,
            user_id,
            question.question_id,
            result.is_correct,
            result.points,
            result.total_score,
            result.attempt_index,
        )

        try:
            self.leaderboard.refresh(quiz_id)
        except Exception as e:
            logger.error(f"Leaderboard refresh failed for quiz {quiz_id}: {str(e)}")

        if not flipped:
            return

        logger.info(f"User {user_id} completed quiz {quiz_id} with {participant.current_score} points")
        self.broadcaster.participant_completed(
            quiz_id, user_id, participant.current_score, participant.total_answers, quiz.total_questions
        )

        try:
            order = finish_order(self.leaderboard.load_participants(quiz_id))
            if user_id in order:
                position = order.index(user_id) + 1
                if position <= self.top_finisher_count:
                    self.broadcaster.round_top_finisher(quiz_id, user_id, position, participant.current_score)
        except Exception as e:
            logger.error(f"Top finisher check failed for quiz {quiz_id}: {str(e)}")

        if self.dispatcher is not None:
            try:
                self.dispatcher.dispatch_participant(
                    quiz_id,
                    user_id,
                    barrier={participant_path(quiz_id, user_id): ack.version}
                )
            except Exception as e:
                logger.error(f"Could not dispatch sync for user {user_id} quiz {quiz_id}: {str(e)}")
