"""
Live leaderboard ranking
"""
import sys
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional

from quiz_engine.services.event_service import EventBroadcaster
from quiz_engine.store.doc_store import KeyValueDocStore
from quiz_engine.store.documents import (
    LeaderboardSnapshot,
    Participant,
    STATUS_COMPLETED,
    leaderboard_path,
    participants_path,
)
from quiz_engine.utils.clock import Clock, to_ms, utcnow

logger = logging.getLogger(__name__)

_NEVER = sys.maxsize


@dataclass(frozen=True)
class LeaderboardEntry:
    user_id: str
    score: int
    correct_answers: int
    total_answers: int
    accuracy: float
    status: str
    average_response_time: float
    last_answer_time: Optional[int]
    position: int
    previous_position: int
    movement: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def ranking_key(participant: Participant):
    """
    Sort key, best first:
    1. score desc  2. correct answers desc  3. accuracy desc
    4. completed before in progress  5. average response time asc
    6. last answer time asc  7. user id (makes the order total)
    """
    last_answer = participant.last_answer_time if participant.last_answer_time is not None else _NEVER
    return (
        -participant.current_score,
        -participant.correct_answers,
        -participant.accuracy,
        0 if participant.status == STATUS_COMPLETED else 1,
        participant.average_response_time,
        last_answer,
        participant.user_id,
    )


def rank(
    participants: Iterable[Participant],
    previous_positions: Optional[Dict[str, int]] = None
) -> List[LeaderboardEntry]:
    """
    Rank participants deterministically

    Pure: identical input always yields identical output. A participant
    without a cached position keeps its current position as previous.
    """
    previous_positions = previous_positions or {}
    ordered = sorted(participants, key=ranking_key)

    entries = []
    for index, participant in enumerate(ordered):
        position = index + 1
        previous = previous_positions.get(participant.user_id) or position
        entries.append(LeaderboardEntry(
            user_id=participant.user_id,
            score=participant.current_score,
            correct_answers=participant.correct_answers,
            total_answers=participant.total_answers,
            accuracy=participant.accuracy,
            status=participant.status,
            average_response_time=participant.average_response_time,
            last_answer_time=participant.last_answer_time,
            position=position,
            previous_position=previous,
            movement=previous - position,
        ))
    return entries


def finish_order(participants: Iterable[Participant]) -> List[str]:
    """User ids of completed participants, earliest completion first"""
    completed = [p for p in participants if p.status == STATUS_COMPLETED]
    completed.sort(key=lambda p: (p.completed_at if p.completed_at is not None else _NEVER, p.user_id))
    return [p.user_id for p in completed]


class LeaderboardService:
    """Reads participants, ranks them, caches the snapshot and broadcasts it"""

    def __init__(self, store: KeyValueDocStore, broadcaster: EventBroadcaster, clock: Clock = utcnow):
        self.store = store
        self.broadcaster = broadcaster
        self.clock = clock

    def load_participants(self, quiz_id: str) -> List[Participant]:
        tree = self.store.read_tree(participants_path(quiz_id))
        return [
            Participant.model_validate(doc)
            for path, doc in sorted(tree.items())
            if "/" not in path
        ]

    def previous_positions(self, quiz_id: str) -> Dict[str, int]:
        doc = self.store.get(leaderboard_path(quiz_id))
        if not doc:
            return {}
        return LeaderboardSnapshot.model_validate(doc).positions

    def get_leaderboard(self, quiz_id: str) -> List[LeaderboardEntry]:
        """Current ranking without touching the cached snapshot"""
        return rank(self.load_participants(quiz_id), self.previous_positions(quiz_id))

    def refresh(self, quiz_id: str) -> List[LeaderboardEntry]:
        """Rank, store the snapshot as the next previous positions, broadcast"""
        entries = self.get_leaderboard(quiz_id)

        snapshot = LeaderboardSnapshot(
            quiz_id=quiz_id,
            positions={entry.user_id: entry.position for entry in entries},
            entries=[entry.to_dict() for entry in entries],
            updated_at=to_ms(self.clock()),
        )
        self.store.set(leaderboard_path(quiz_id), snapshot.model_dump())

        self.broadcaster.leaderboard_update(quiz_id, [entry.to_dict() for entry in entries])
        logger.debug(f"Leaderboard refreshed for quiz {quiz_id}: {len(entries)} participants")
        return entries
