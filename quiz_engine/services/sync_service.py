"""
Ephemeral -> durable reconciliation

Safe to re-run at any time: attempt rows, results and topic statistics are
all upserts keyed on their natural keys, so at-least-once execution still
leaves exactly one durable row per attempt.
"""
import time
import threading
import logging
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from quiz_engine.config import settings
from quiz_engine.exceptions import CatalogLookupError, SyncError
from quiz_engine.repository import QuizRepository
from quiz_engine.services.catalog_service import Catalog, QuizInfo
from quiz_engine.services.completion_service import CompletionDetector
from quiz_engine.services.event_service import EventBroadcaster
from quiz_engine.services.scoring_service import ScoringEngine
from quiz_engine.store.doc_store import KeyValueDocStore
from quiz_engine.store.documents import (
    Participant,
    SESSION_FINISHED,
    STATUS_COMPLETED,
    SessionMeta,
    participant_path,
    session_path,
)
from quiz_engine.utils.clock import Clock, from_ms, to_ms, utcnow
from quiz_engine.utils.lease_lock import LeaseLock, LeaseRenewer

logger = logging.getLogger(__name__)

LOCKED = "LOCKED"
NO_PARTICIPANTS = "NO_PARTICIPANTS"

UNANSWERED_BREAKDOWN = {"unanswered": True, "reason": "not_answered_during_quiz"}


@dataclass
class SyncReport:
    quiz_id: str
    success: bool = True
    participants_processed: int = 0
    attempts_written: int = 0
    unanswered_written: int = 0
    status_corrected: int = 0
    errors: int = 0
    failed_users: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    session_deleted: bool = False
    duration_ms: int = 0

    @property
    def locked(self) -> bool:
        return self.reason == LOCKED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ParticipantOutcome:
    final_status: str
    status_corrected: bool
    attempts_written: int
    unanswered_written: int
    score: float


@dataclass
class LatestAttemptTotals:
    raw_total: int
    max_points: int
    bonuses_total: int
    answered: int
    correct: int
    score: float


def latest_attempts(rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Keep the row with the highest attempt_index for every question"""
    latest: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        current = latest.get(row["question_id"])
        if current is None or row["attempt_index"] > current["attempt_index"]:
            latest[row["question_id"]] = row
    return latest


def normalize_score(raw_total: int, max_points: int) -> float:
    """raw / max on a 0-10 scale, clamped"""
    if max_points <= 0:
        return 0.0
    return min(max(raw_total / max_points * 10, 0.0), 10.0)


def summarize_latest_attempts(
    rows: Iterable[Dict[str, Any]],
    potential_for: Callable[[Dict[str, Any]], int]
) -> LatestAttemptTotals:
    """
    Score a participant from the latest attempt of each question

    Earlier attempts never count: a wrong first try followed by a right
    retry contributes only the retry's points.
    """
    latest = list(latest_attempts(rows).values())
    raw_total = sum(row["points_earned"] or 0 for row in latest)
    max_points = sum(potential_for(row) for row in latest)
    correct = sum(1 for row in latest if row["is_correct"])
    bonuses = 0
    for row in latest:
        breakdown = row.get("scoring_breakdown") or {}
        if row["is_correct"]:
            bonuses += int(breakdown.get("speed_bonus", 0)) + int(breakdown.get("streak_bonus", 0))

    answered = len(latest)
    if max_points == 0:
        max_points = answered * 10
        raw_total = correct * 10

    return LatestAttemptTotals(
        raw_total=raw_total,
        max_points=max_points,
        bonuses_total=bonuses,
        answered=answered,
        correct=correct,
        score=normalize_score(raw_total, max_points),
    )


class SyncCoordinator:
    """
    Lock-guarded reconciliation of a quiz session into the relational store

    One run per quiz at a time: a run that cannot take the lease returns a
    LOCKED report immediately. Each participant is written in its own
    database transaction so one failure neither blocks the others nor
    leaves partial rows behind.
    """

    def __init__(
        self,
        store: KeyValueDocStore,
        session_factory,
        catalog: Catalog,
        completion: CompletionDetector,
        scoring: ScoringEngine,
        lock: LeaseLock,
        broadcaster: Optional[EventBroadcaster] = None,
        clock: Clock = utcnow,
        lock_ttl: int = None,
        renew_interval: float = None,
        barrier_timeout: float = None
    ):
        self.store = store
        self.session_factory = session_factory
        self.catalog = catalog
        self.completion = completion
        self.scoring = scoring
        self.lock = lock
        self.broadcaster = broadcaster
        self.clock = clock
        self.lock_ttl = lock_ttl or settings.SYNC_LOCK_TTL
        self.renew_interval = renew_interval or settings.SYNC_LOCK_RENEW_INTERVAL
        self.barrier_timeout = barrier_timeout if barrier_timeout is not None else settings.SYNC_BARRIER_TIMEOUT

    @staticmethod
    def lock_key(quiz_id: str) -> str:
        return f"lock:quiz-sync:{quiz_id}"

    # Entry points

    def reconcile(self, quiz_id: str, barrier: Optional[Dict[str, int]] = None) -> SyncReport:
        """
        Reconcile every participant of a quiz

        Deletes the ephemeral session only when every participant succeeded
        and the session is closed; otherwise it is kept for a later run.
        """
        return self._run_locked(quiz_id, barrier, self._reconcile_quiz)

    def reconcile_participant(
        self,
        quiz_id: str,
        user_id: str,
        barrier: Optional[Dict[str, int]] = None
    ) -> SyncReport:
        """Reconcile one participant (completion-triggered); never deletes the session"""
        return self._run_locked(
            quiz_id,
            barrier,
            lambda report: self._reconcile_single(report, user_id)
        )

    # Run scaffolding

    def _run_locked(
        self,
        quiz_id: str,
        barrier: Optional[Dict[str, int]],
        body: Callable[[SyncReport], None]
    ) -> SyncReport:
        started = time.monotonic()
        report = SyncReport(quiz_id=quiz_id)
        key = self.lock_key(quiz_id)

        if not self.lock.acquire(key, self.lock_ttl):
            logger.warning(f"Skip sync for quiz {quiz_id}: lock held by another run")
            report.success = False
            report.reason = LOCKED
            return report

        renewer = LeaseRenewer(self.lock, key, self.lock_ttl, self.renew_interval).start()
        try:
            self._await_barrier(barrier)
            body(report)
        except CatalogLookupError as e:
            logger.error(f"Sync aborted for quiz {quiz_id}: {e.message}")
            report.success = False
            report.reason = e.message
        except Exception as e:
            logger.error(f"Sync failed for quiz {quiz_id}: {str(e)}", exc_info=True)
            report.success = False
            report.errors += 1
            report.reason = str(e)
        finally:
            renewer.stop()
            self.lock.release(key)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Sync finished for quiz {quiz_id}: users={report.participants_processed}, "
            f"attempts={report.attempts_written}, unanswered={report.unanswered_written}, "
            f"statusCorrected={report.status_corrected}, errors={report.errors}, "
            f"deleted={report.session_deleted}, duration={report.duration_ms}ms"
        )
        if self.broadcaster is not None and report.reason != NO_PARTICIPANTS:
            self.broadcaster.quiz_synced(quiz_id, report.to_dict())
        return report

    def _await_barrier(self, barrier: Optional[Dict[str, int]]) -> None:
        """Wait for the acknowledged writes that triggered this run to be readable"""
        for path, version in (barrier or {}).items():
            if not self.store.wait_for_version(path, version, self.barrier_timeout):
                logger.warning(f"Read barrier timed out for {path} at version {version}; reading anyway")

    def _load_session(self, quiz_id: str) -> Tuple[Optional[SessionMeta], List[Participant]]:
        tree = self.store.read_tree(session_path(quiz_id))
        meta = SessionMeta.model_validate(tree["meta"]) if "meta" in tree else None
        participants = []
        for path, doc in sorted(tree.items()):
            parts = path.split("/")
            if len(parts) == 2 and parts[0] == "participants":
                participants.append(Participant.model_validate(doc))
        return meta, participants

    def _session_state(self, quiz: QuizInfo, meta: Optional[SessionMeta]) -> Tuple[Optional[str], Optional[int]]:
        if meta is not None and meta.is_finished or quiz.status == SESSION_FINISHED:
            status = SESSION_FINISHED
        else:
            status = meta.status if meta is not None else None
        end_time = meta.end_time if meta is not None and meta.end_time is not None else None
        if end_time is None and quiz.end_time is not None:
            end_time = to_ms(quiz.end_time)
        return status, end_time

    def _session_closed(self, session_status: Optional[str], end_time: Optional[int], now: datetime) -> bool:
        if session_status == SESSION_FINISHED:
            return True
        return end_time is not None and to_ms(now) > end_time

    def _process(self, report: SyncReport, quiz: QuizInfo, session_status, end_time, participant: Participant, now) -> None:
        try:
            outcome = self.reconcile_one(quiz, participant, session_status, end_time, now)
        except SyncError as e:
            report.errors += 1
            report.failed_users.append(participant.user_id)
            logger.error(f"Sync error for user {participant.user_id} quiz {quiz.quiz_id}: {e.message}")
            return
        if outcome is None:
            return
        report.participants_processed += 1
        report.attempts_written += outcome.attempts_written
        report.unanswered_written += outcome.unanswered_written
        if outcome.status_corrected:
            report.status_corrected += 1

    def _reconcile_quiz(self, report: SyncReport) -> None:
        quiz_id = report.quiz_id
        meta, participants = self._load_session(quiz_id)
        if not participants:
            report.reason = NO_PARTICIPANTS
            if meta is not None and self._session_closed(meta.status, meta.end_time, self.clock()):
                self._close_out(quiz_id, meta.status)
                report.session_deleted = True
            return

        quiz = self.catalog.get_quiz(quiz_id)
        now = self.clock()
        session_status, end_time = self._session_state(quiz, meta)

        for participant in participants:
            self._process(report, quiz, session_status, end_time, participant, now)

        if report.errors:
            report.success = False
            logger.warning(f"Quiz {quiz_id} kept in the session store for retry ({report.errors} errors)")
        elif self._session_closed(session_status, end_time, now):
            self._close_out(quiz_id, session_status)
            report.session_deleted = True

    def _close_out(self, quiz_id: str, session_status: Optional[str]) -> None:
        """Drop a closed session; a finished quiz is recorded in the catalog first"""
        if session_status == SESSION_FINISHED:
            self.catalog.mark_finished(quiz_id)
        self.store.delete_tree(session_path(quiz_id))
        logger.info(f"Ephemeral session for quiz {quiz_id} removed after sync")

    def _reconcile_single(self, report: SyncReport, user_id: str) -> None:
        quiz_id = report.quiz_id
        doc = self.store.get(participant_path(quiz_id, user_id))
        if doc is None:
            report.reason = NO_PARTICIPANTS
            return

        meta_doc = self.store.get(f"{session_path(quiz_id)}/meta")
        meta = SessionMeta.model_validate(meta_doc) if meta_doc else None
        quiz = self.catalog.get_quiz(quiz_id)
        session_status, end_time = self._session_state(quiz, meta)

        self._process(report, quiz, session_status, end_time, Participant.model_validate(doc), self.clock())
        if report.errors:
            report.success = False

    # Per participant

    def flatten_attempts(self, quiz: QuizInfo, participant: Participant, now: datetime) -> List[Dict[str, Any]]:
        """Every attempt of every answered question as a durable row"""
        known = set(quiz.question_ids)
        rows = []
        for question_id, answer in sorted(participant.answers.items()):
            if question_id not in known:
                logger.warning(f"Question {question_id} is not part of quiz {quiz.quiz_id}; skipping")
                continue
            for attempt in answer.attempt_history:
                if attempt.attempt_index not in (1, 2):
                    logger.error(
                        f"Invalid attempt_index {attempt.attempt_index} for user {participant.user_id} "
                        f"question {question_id}; skipping"
                    )
                    continue
                breakdown = dict(attempt.scoring_breakdown)
                rows.append({
                    "user_id": participant.user_id,
                    "question_id": question_id,
                    "quiz_id": quiz.quiz_id,
                    "attempt_index": attempt.attempt_index,
                    "selected_answer": attempt.answer_id,
                    "is_correct": attempt.is_correct,
                    "time_spent": attempt.response_time_ms,
                    "points_earned": attempt.points_earned,
                    "scoring_breakdown": breakdown,
                    "streak_at_time": int(breakdown.get("streak", 0)),
                    "unanswered": False,
                    "attempt_date": from_ms(attempt.timestamp) or now,
                })
        return rows

    def unanswered_rows(self, quiz_id: str, user_id: str, question_ids: Iterable[str], now: datetime) -> List[Dict[str, Any]]:
        return [
            {
                "user_id": user_id,
                "question_id": question_id,
                "quiz_id": quiz_id,
                "attempt_index": 1,
                "selected_answer": None,
                "is_correct": False,
                "time_spent": 0,
                "points_earned": 0,
                "scoring_breakdown": dict(UNANSWERED_BREAKDOWN),
                "streak_at_time": 0,
                "unanswered": True,
                "attempt_date": now,
            }
            for question_id in question_ids
        ]

    def potential_for(self, quiz: QuizInfo) -> Callable[[Dict[str, Any]], int]:
        def potential(row: Dict[str, Any]) -> int:
            breakdown = row.get("scoring_breakdown") or {}
            if "potential" in breakdown:
                return int(breakdown["potential"])
            return self.scoring.potential(quiz.question(row["question_id"]).difficulty)
        return potential

    def topic_rows(self, quiz: QuizInfo, user_id: str, rows: List[Dict[str, Any]], now: datetime) -> List[Dict[str, Any]]:
        stats = defaultdict(lambda: {"total": 0, "correct": 0})
        for row in rows:
            topic = quiz.question(row["question_id"]).topic
            stats[topic]["total"] += 1
            if row["is_correct"]:
                stats[topic]["correct"] += 1
        return [
            {
                "user_id": user_id,
                "quiz_id": quiz.quiz_id,
                "topic": topic,
                "total_attempts": stat["total"],
                "correct_answers": stat["correct"],
                "accuracy": stat["correct"] / stat["total"] if stat["total"] else 0.0,
                "updated_at": now,
            }
            for topic, stat in sorted(stats.items())
        ]

    def reconcile_one(
        self,
        quiz: QuizInfo,
        participant: Participant,
        session_status: Optional[str],
        end_time: Optional[int],
        now: datetime
    ) -> Optional[ParticipantOutcome]:
        """
        Write one participant's attempts, unanswered rows, result and topic stats

        Returns None when there is nothing to write (no attempts and not
        completed).

        Raises:
            SyncError: the participant's transaction was rolled back
        """
        user_id = participant.user_id
        final_status, corrected = self.completion.reconcile_status(
            quiz.total_questions, participant, session_status, end_time, now
        )

        rows = self.flatten_attempts(quiz, participant, now)
        if not rows and final_status != STATUS_COMPLETED:
            return None

        with self.session_factory() as db:
            repo = QuizRepository(db)
            try:
                stored = repo.get_result(quiz.quiz_id, user_id)
                if stored is not None and stored.status == STATUS_COMPLETED and final_status != STATUS_COMPLETED:
                    logger.warning(
                        f"User {user_id} quiz {quiz.quiz_id}: durable result already completed; keeping completed"
                    )
                    final_status = STATUS_COMPLETED

                attempts_written = repo.upsert_attempts(rows)

                unanswered_written = 0
                if final_status == STATUS_COMPLETED:
                    answered = {row["question_id"] for row in rows}
                    missing = [qid for qid in quiz.question_ids if qid not in answered]
                    present = repo.existing_question_ids(user_id, quiz.quiz_id, missing)
                    truly_missing = [qid for qid in missing if qid not in present]
                    unanswered_written = repo.insert_unanswered(
                        self.unanswered_rows(quiz.quiz_id, user_id, truly_missing, now)
                    )

                totals = summarize_latest_attempts(rows, self.potential_for(quiz))

                completion_time = None
                if participant.completed_at is not None and participant.joined_at is not None:
                    completion_time = max(participant.completed_at - participant.joined_at, 0) // 1000

                repo.upsert_result({
                    "user_id": user_id,
                    "quiz_id": quiz.quiz_id,
                    "score": totals.score,
                    "status": final_status,
                    "raw_total_points": totals.raw_total,
                    "max_points": totals.max_points,
                    "bonuses_total": totals.bonuses_total,
                    "completion_time": completion_time,
                    "synced_at": now,
                    "updated_at": now,
                })
                repo.upsert_topic_stats(self.topic_rows(quiz, user_id, rows, now))
                db.commit()
            except Exception as e:
                db.rollback()
                raise SyncError(str(e), user_id=user_id) from e

        logger.info(
            f"Synced user {user_id} quiz {quiz.quiz_id}: status={final_status}, "
            f"raw={totals.raw_total}/{totals.max_points}, score={totals.score:.2f}, "
            f"attempts={attempts_written}, unanswered={unanswered_written}"
        )
        return ParticipantOutcome(
            final_status=final_status,
            status_corrected=corrected,
            attempts_written=attempts_written,
            unanswered_written=unanswered_written,
            score=totals.score,
        )


class SyncDispatcher:
    """
    Fire-and-forget execution of reconciliations off the request path

    A run that finds the quiz lease taken is retried with exponential
    backoff, up to `locked_retries` times.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        max_workers: int = None,
        locked_retries: int = None,
        retry_backoff: float = None
    ):
        self.coordinator = coordinator
        self.locked_retries = locked_retries if locked_retries is not None else settings.SYNC_LOCKED_RETRIES
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.SYNC_RETRY_BACKOFF
        self._closing = threading.Event()
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.SYNC_WORKERS,
            thread_name_prefix="quiz-sync"
        )

    def _retry_locked(self, label: str, work: Callable[[], SyncReport]) -> SyncReport:
        report = work()
        delay = self.retry_backoff
        for attempt in range(1, self.locked_retries + 1):
            if not report.locked:
                return report
            logger.info(f"Sync {label} waiting for the quiz lock: retry {attempt}/{self.locked_retries} in {delay:.2f}s")
            if self._closing.wait(delay):
                break
            report = work()
            delay *= 2
        if report.locked:
            logger.warning(f"Sync {label} gave up on the quiz lock; left for the periodic sweep")
        return report

    def _run(self, label: str, work: Callable[[], SyncReport]) -> Optional[SyncReport]:
        try:
            return self._retry_locked(label, work)
        except Exception as e:
            logger.error(f"Background sync {label} failed: {str(e)}", exc_info=True)
            return None

    def dispatch_participant(self, quiz_id: str, user_id: str, barrier: Optional[Dict[str, int]] = None) -> Future:
        logger.info(f"Dispatching sync for user {user_id} quiz {quiz_id}")
        return self.executor.submit(
            self._run,
            f"{quiz_id}/{user_id}",
            lambda: self.coordinator.reconcile_participant(quiz_id, user_id, barrier)
        )

    def dispatch_quiz(self, quiz_id: str, barrier: Optional[Dict[str, int]] = None) -> Future:
        logger.info(f"Dispatching sync for quiz {quiz_id}")
        return self.executor.submit(
            self._run,
            quiz_id,
            lambda: self.coordinator.reconcile(quiz_id, barrier)
        )

    def shutdown(self, wait: bool = True) -> None:
        self._closing.set()
        self.executor.shutdown(wait=wait)


class PeriodicSyncScheduler:
    """Sweeps every live session on a fixed interval"""

    def __init__(self, coordinator: SyncCoordinator, list_quiz_ids: Callable[[], List[str]], interval: float):
        self.coordinator = coordinator
        self.list_quiz_ids = list_quiz_ids
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> List[SyncReport]:
        reports = []
        for quiz_id in self.list_quiz_ids():
            try:
                reports.append(self.coordinator.reconcile(quiz_id))
            except Exception as e:
                logger.error(f"Periodic sync failed for quiz {quiz_id}: {str(e)}")
        return reports

    def _loop(self):
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self):
        if self.interval <= 0:
            logger.info("Periodic sync disabled")
            return self
        self._thread = threading.Thread(target=self._loop, name="quiz-sync-periodic", daemon=True)
        self._thread.start()
        logger.info(f"Periodic sync every {self.interval}s")
        return self

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
