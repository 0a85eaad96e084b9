"""
Multi-factor answer scoring
Base points by difficulty, flat speed bonus, streak bonus, retry penalty
"""
import math
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from quiz_engine.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreBreakdown:
    """Every component of an attempt's points, kept for audit and re-derivation"""
    difficulty: str
    attempt_index: int
    streak: int
    base: int
    speed_bonus: int
    streak_bonus: int
    multiplier: float
    total: int
    potential: int

    @property
    def bonuses(self) -> int:
        return self.speed_bonus + self.streak_bonus

    @property
    def retry_penalty_applied(self) -> bool:
        return 0.0 < self.multiplier < 1.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["retry_penalty_applied"] = self.retry_penalty_applied
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoreBreakdown":
        return cls(
            difficulty=data.get("difficulty", settings.DEFAULT_DIFFICULTY),
            attempt_index=int(data.get("attempt_index", 1)),
            streak=int(data.get("streak", 0)),
            base=int(data.get("base", 0)),
            speed_bonus=int(data.get("speed_bonus", 0)),
            streak_bonus=int(data.get("streak_bonus", 0)),
            multiplier=float(data.get("multiplier", 1.0)),
            total=int(data.get("total", 0)),
            potential=int(data.get("potential", 0)),
        )


class ScoringEngine:
    """
    Pure scoring function over configurable tables

    Rules:
    - Wrong answer: every component is zero
    - Base points: easy 100 / medium 150 / hard 200
    - Speed bonus: 30 / 40 / 50 when answered within 5 seconds
    - Streak bonus: from 4 consecutive prior correct answers, capped at 7
    - Second attempt: would-be total halved, rounded down
    """

    def __init__(
        self,
        base_points: Optional[Dict[str, int]] = None,
        speed_bonus: Optional[Dict[str, int]] = None,
        streak_bonus: Optional[Dict[int, int]] = None,
        speed_threshold_ms: int = None,
        streak_min: int = None,
        streak_cap: int = None,
        retry_penalty: float = None,
        default_difficulty: str = None
    ):
        self.base_points = dict(base_points or settings.BASE_POINTS)
        self.speed_bonus = dict(speed_bonus or settings.SPEED_BONUS)
        self.streak_bonus = {int(k): v for k, v in (streak_bonus or settings.STREAK_BONUS).items()}
        self.speed_threshold_ms = speed_threshold_ms if speed_threshold_ms is not None else settings.SPEED_BONUS_THRESHOLD_MS
        self.streak_min = streak_min if streak_min is not None else settings.STREAK_MIN
        self.streak_cap = streak_cap if streak_cap is not None else settings.STREAK_CAP
        self.retry_penalty = retry_penalty if retry_penalty is not None else settings.RETRY_PENALTY
        self.default_difficulty = default_difficulty or settings.DEFAULT_DIFFICULTY

    def normalize_difficulty(self, difficulty: Optional[str]) -> str:
        value = (difficulty or "").lower()
        if value not in self.base_points:
            return self.default_difficulty
        return value

    def potential(self, difficulty: Optional[str]) -> int:
        """Points a question is worth at full credit on a first attempt"""
        level = self.normalize_difficulty(difficulty)
        return self.base_points[level] + self.speed_bonus.get(level, 0)

    def streak_bonus_for(self, current_streak: int) -> int:
        if current_streak < self.streak_min:
            return 0
        return self.streak_bonus.get(min(current_streak, self.streak_cap), 0)

    def compute_score(
        self,
        difficulty: Optional[str],
        is_correct: bool,
        response_time_ms: int,
        current_streak: int,
        attempt_index: int
    ) -> ScoreBreakdown:
        """
        Score one attempt

        Args:
            difficulty: Question difficulty (easy/medium/hard)
            is_correct: Whether the submitted answer was right
            response_time_ms: Time taken to answer
            current_streak: Consecutive correct answers before this one
            attempt_index: 1 for the first try, 2 for the retry

        Returns:
            ScoreBreakdown with the total and each component
        """
        level = self.normalize_difficulty(difficulty)
        multiplier = self.retry_penalty if attempt_index >= 2 else 1.0
        potential = self.potential(level)

        if not is_correct:
            return ScoreBreakdown(
                difficulty=level,
                attempt_index=attempt_index,
                streak=current_streak,
                base=0,
                speed_bonus=0,
                streak_bonus=0,
                multiplier=0.0,
                total=0,
                potential=potential,
            )

        base = self.base_points[level]
        speed = self.speed_bonus.get(level, 0) if response_time_ms <= self.speed_threshold_ms else 0
        streak = self.streak_bonus_for(current_streak)
        total = math.floor((base + speed + streak) * multiplier)

        return ScoreBreakdown(
            difficulty=level,
            attempt_index=attempt_index,
            streak=current_streak,
            base=base,
            speed_bonus=speed,
            streak_bonus=streak,
            multiplier=multiplier,
            total=total,
            potential=potential,
        )

    def rederive(self, breakdown: Dict[str, Any], is_correct: bool, response_time_ms: int) -> ScoreBreakdown:
        """Recompute a stored breakdown from the inputs it recorded"""
        stored = ScoreBreakdown.from_dict(breakdown)
        return self.compute_score(
            stored.difficulty,
            is_correct,
            response_time_ms,
            stored.streak,
            stored.attempt_index,
        )


# Default engine built from settings
scoring_engine = ScoringEngine()
