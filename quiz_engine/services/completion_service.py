"""
Authoritative participant completion detection
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from quiz_engine.store.documents import (
    Participant,
    SESSION_FINISHED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
)
from quiz_engine.utils.clock import to_ms

logger = logging.getLogger(__name__)


class CompletionDetector:
    """
    Decides whether a participant is done, ignoring any reported status

    A participant is complete when any of these holds:
    - the session was finished (host or timer)
    - the quiz end time has passed
    - every question of the quiz has been answered at least once
    """

    def evaluate(
        self,
        quiz_total_questions: int,
        participant: Participant,
        session_status: Optional[str],
        quiz_end_time: Optional[int],
        now: datetime
    ) -> Tuple[bool, str]:
        """
        Returns:
            Tuple of (is_complete, reason)
        """
        answered = sum(1 for answer in participant.answers.values() if answer.attempt_history)

        if session_status == SESSION_FINISHED:
            return True, f"session finished ({answered}/{quiz_total_questions} answered)"

        if quiz_end_time is not None and to_ms(now) > quiz_end_time:
            return True, f"quiz end time passed ({answered}/{quiz_total_questions} answered)"

        if quiz_total_questions > 0 and answered >= quiz_total_questions:
            return True, f"answered all questions ({answered}/{quiz_total_questions})"

        return False, f"answered {answered}/{quiz_total_questions}"

    def is_complete(
        self,
        quiz_total_questions: int,
        participant: Participant,
        session_status: Optional[str],
        quiz_end_time: Optional[int],
        now: datetime
    ) -> bool:
        complete, _ = self.evaluate(quiz_total_questions, participant, session_status, quiz_end_time, now)
        return complete

    def reconcile_status(
        self,
        quiz_total_questions: int,
        participant: Participant,
        session_status: Optional[str],
        quiz_end_time: Optional[int],
        now: datetime
    ) -> Tuple[str, bool]:
        """
        Authoritative status for a stored participant

        Completed never reverts. A stored status that disagrees with the
        recomputation is logged and overridden.

        Returns:
            Tuple of (final_status, corrected)
        """
        stored = participant.status or STATUS_IN_PROGRESS
        complete, reason = self.evaluate(quiz_total_questions, participant, session_status, quiz_end_time, now)

        if complete or stored == STATUS_COMPLETED:
            final_status = STATUS_COMPLETED
        else:
            final_status = STATUS_IN_PROGRESS

        if stored == STATUS_COMPLETED and not complete:
            logger.warning(
                f"User {participant.user_id}: stored status 'completed' not backed by "
                f"recomputation ({reason}); keeping completed"
            )
            return final_status, False

        corrected = stored != final_status
        if corrected:
            logger.info(
                f"User {participant.user_id}: status corrected '{stored}' -> '{final_status}' | {reason}"
            )
        return final_status, corrected


# Global instance
completion_detector = CompletionDetector()
