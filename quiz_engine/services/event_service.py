"""
Real-time notifications for quiz participants and observers
"""
import logging
from typing import Any, Dict, List

from quiz_engine.utils.clock import Clock, to_ms, utcnow
from quiz_engine.utils.event_bus import EventBus

logger = logging.getLogger(__name__)

ANSWER_RESULT = "answer-result"
LEADERBOARD_UPDATE = "leaderboard-update"
ROUND_TOP_FINISHER = "round-top-finisher"
PARTICIPANT_COMPLETED = "participant-completed"
QUIZ_FINISHED = "quiz-finished"
QUIZ_SYNCED = "quiz-synced"

FINISH_ORDERS = ["1st", "2nd", "3rd"]
CELEBRATION_TYPES = ["gold", "silver", "bronze"]


def quiz_channel(quiz_id: str) -> str:
    return f"quiz:{quiz_id}"


def user_channel(quiz_id: str, user_id: str) -> str:
    return f"quiz:{quiz_id}:{user_id}"


def observer_channel(quiz_id: str) -> str:
    return f"quiz:{quiz_id}:observers"


class EventBroadcaster:
    """
    Publishes engine events; purely observational

    Nothing raised by the transport escapes this class: a failed
    notification is logged and dropped so scoring and sync never roll back.
    """

    def __init__(self, bus: EventBus, clock: Clock = utcnow):
        self.bus = bus
        self.clock = clock

    def _publish(self, channel: str, event: str, payload: Dict[str, Any]) -> bool:
        try:
            self.bus.publish(channel, event, payload)
            return True
        except Exception as e:
            logger.error(f"Failed to publish {event} to {channel}: {str(e)}")
            return False

    def answer_result(
        self,
        quiz_id: str,
        user_id: str,
        question_id: str,
        is_correct: bool,
        points_earned: int,
        total_score: int,
        attempt_index: int
    ) -> bool:
        return self._publish(user_channel(quiz_id, user_id), ANSWER_RESULT, {
            "quiz_id": quiz_id,
            "question_id": question_id,
            "is_correct": is_correct,
            "points_earned": points_earned,
            "total_score": total_score,
            "attempt_index": attempt_index,
        })

    def leaderboard_update(self, quiz_id: str, entries: List[Dict[str, Any]]) -> bool:
        return self._publish(quiz_channel(quiz_id), LEADERBOARD_UPDATE, {
            "quiz_id": quiz_id,
            "leaderboard": [
                {
                    "user_id": entry["user_id"],
                    "score": entry["score"],
                    "position": entry["position"],
                    "previous_position": entry["previous_position"],
                }
                for entry in entries
            ],
            "timestamp": to_ms(self.clock()),
        })

    def round_top_finisher(self, quiz_id: str, user_id: str, position: int, score: int) -> bool:
        """Racing-mode celebration for the first finishers"""
        index = min(position, len(FINISH_ORDERS)) - 1
        return self._publish(quiz_channel(quiz_id), ROUND_TOP_FINISHER, {
            "quiz_id": quiz_id,
            "user_id": user_id,
            "position": position,
            "score": score,
            "finish_order": FINISH_ORDERS[index],
            "celebration_type": CELEBRATION_TYPES[index],
            "timestamp": to_ms(self.clock()),
        })

    def participant_completed(self, quiz_id: str, user_id: str, score: int, answered: int, total: int) -> bool:
        return self._publish(observer_channel(quiz_id), PARTICIPANT_COMPLETED, {
            "quiz_id": quiz_id,
            "user_id": user_id,
            "score": score,
            "answered": answered,
            "total_questions": total,
        })

    def quiz_finished(self, quiz_id: str) -> bool:
        payload = {"quiz_id": quiz_id, "timestamp": to_ms(self.clock())}
        delivered = self._publish(quiz_channel(quiz_id), QUIZ_FINISHED, payload)
        return self._publish(observer_channel(quiz_id), QUIZ_FINISHED, payload) and delivered

    def quiz_synced(self, quiz_id: str, report: Dict[str, Any]) -> bool:
        return self._publish(observer_channel(quiz_id), QUIZ_SYNCED, {"quiz_id": quiz_id, **report})
