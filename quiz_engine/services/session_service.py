"""
Quiz session lifecycle: join, finish, inspect
"""
import logging
from typing import Any, Dict, List, Optional

from quiz_engine.exceptions import InvalidSubmission, QuizClosed
from quiz_engine.services.catalog_service import Catalog, QuizInfo
from quiz_engine.services.event_service import EventBroadcaster
from quiz_engine.store.doc_store import KeyValueDocStore
from quiz_engine.store.documents import (
    SESSION_ACTIVE,
    SESSION_FINISHED,
    Participant,
    SessionMeta,
    is_valid_key,
    meta_path,
    participant_path,
    participants_path,
)
from quiz_engine.utils.clock import Clock, to_ms, utcnow

logger = logging.getLogger(__name__)

SESSIONS_ROOT = "sessions"


class SessionService:
    """Creates and closes the ephemeral session of a quiz instance"""

    def __init__(
        self,
        store: KeyValueDocStore,
        catalog: Catalog,
        broadcaster: EventBroadcaster,
        dispatcher=None,
        clock: Clock = utcnow
    ):
        self.store = store
        self.catalog = catalog
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.clock = clock

    def ensure_session(self, quiz_id: str, quiz: Optional[QuizInfo] = None) -> SessionMeta:
        """
        Return the session meta, creating it from the catalog on first use

        A quiz the catalog reports as closed is never reopened: after its
        session was reconciled away the caller gets an unsaved closed meta.
        """
        quiz = quiz or self.catalog.get_quiz(quiz_id)
        now_ms = to_ms(self.clock())
        end_ms = to_ms(quiz.end_time) if quiz.end_time else None
        finished = quiz.status == SESSION_FINISHED
        closed = finished or (end_ms is not None and now_ms > end_ms)

        def create_if_absent(current):
            if current is not None or closed:
                return None
            return SessionMeta(
                quiz_id=quiz_id,
                status=SESSION_ACTIVE,
                end_time=end_ms,
                started_at=now_ms,
            ).model_dump()

        ack = self.store.transact(meta_path(quiz_id), create_if_absent)
        if ack.value is None:
            return SessionMeta(
                quiz_id=quiz_id,
                status=SESSION_FINISHED if finished else SESSION_ACTIVE,
                end_time=end_ms,
                started_at=now_ms,
            )
        if ack.committed:
            logger.info(f"Session created for quiz {quiz_id}")
        return SessionMeta.model_validate(ack.value)

    def is_open(self, meta: SessionMeta) -> bool:
        if meta.status != SESSION_ACTIVE:
            return False
        if meta.end_time is not None and to_ms(self.clock()) > meta.end_time:
            return False
        return True

    def join(self, quiz_id: str, user_id: str) -> Participant:
        """
        Create the participant document if it does not exist yet

        Raises:
            QuizClosed: a new participant tried to join a closed quiz
        """
        if not is_valid_key(quiz_id) or not is_valid_key(user_id):
            raise InvalidSubmission("quiz_id and user_id must be non-empty path-safe strings")

        meta = self.ensure_session(quiz_id)
        path = participant_path(quiz_id, user_id)
        if not self.is_open(meta):
            existing = self.store.get(path)
            if existing is None:
                raise QuizClosed(f"Quiz {quiz_id} is closed")
            return Participant.model_validate(existing)

        now_ms = to_ms(self.clock())

        def create_if_absent(current):
            if current is not None:
                return None
            return Participant(user_id=user_id, joined_at=now_ms).model_dump()

        ack = self.store.transact(path, create_if_absent)
        if ack.committed:
            logger.info(f"User {user_id} joined quiz {quiz_id}")
        return Participant.model_validate(ack.value)

    def finish(self, quiz_id: str) -> SessionMeta:
        """
        Close the session (host or timer) and dispatch reconciliation

        The catalog is marked first so the quiz stays closed once its
        session is deleted. Idempotent: finishing a finished session only
        re-dispatches the sync.
        """
        meta = self.ensure_session(quiz_id)
        self.catalog.mark_finished(quiz_id)
        now_ms = to_ms(self.clock())

        def close(current):
            if current is None:
                return None
            meta = SessionMeta.model_validate(current)
            if meta.status == SESSION_FINISHED:
                return None
            meta.status = SESSION_FINISHED
            meta.finished_at = now_ms
            return meta.model_dump()

        ack = self.store.transact(meta_path(quiz_id), close)
        if ack.value is not None:
            meta = SessionMeta.model_validate(ack.value)
        else:
            meta = meta.model_copy(update={"status": SESSION_FINISHED})

        if ack.committed:
            logger.info(f"Quiz {quiz_id} finished")
            self.broadcaster.quiz_finished(quiz_id)

        if self.dispatcher is not None:
            self.dispatcher.dispatch_quiz(quiz_id)
        return meta

    def get_meta(self, quiz_id: str) -> Optional[SessionMeta]:
        doc = self.store.get(meta_path(quiz_id))
        return SessionMeta.model_validate(doc) if doc else None

    def get_participant(self, quiz_id: str, user_id: str) -> Optional[Participant]:
        doc = self.store.get(participant_path(quiz_id, user_id))
        return Participant.model_validate(doc) if doc else None

    def snapshot(self, quiz_id: str) -> Dict[str, Any]:
        """Meta plus every participant document of a session"""
        meta = self.get_meta(quiz_id)
        tree = self.store.read_tree(participants_path(quiz_id))
        return {
            "quiz_id": quiz_id,
            "meta": meta.model_dump() if meta else None,
            "participants": {path: doc for path, doc in sorted(tree.items()) if "/" not in path},
        }

    def active_quiz_ids(self) -> List[str]:
        return self.store.children(SESSIONS_ROOT)
