# flashdeck/scheduler.py

"""
Defines the BaseScheduler abstract class and the SM-2 scheduler for flashdeck.

The scheduler is a pure transformation: it maps a card's scheduling state and
a recall rating to the next scheduling state. It performs no I/O and never
mutates its inputs; callers decide whether to apply the result and append the
accompanying review event.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_EASE_FACTOR,
    DEFAULT_QUALITY_MAP,
    EASY_BONUS,
    HARD_INTERVAL_FACTOR,
    MINIMUM_EASE_FACTOR,
    RELEARN_DELAY,
)
from .models import Card, Rating, ReviewEvent, SchedulingState, ensure_utc

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero (value >= 0)."""
    return int(math.floor(value + 0.5))


def ease_delta(quality: int) -> float:
    """The SM-2 ease adjustment for a quality score on the 0-5 scale."""
    miss = 5 - quality
    return 0.1 - miss * (0.08 + miss * 0.02)


def update_ease(ease_factor: float, quality: int, minimum: float = MINIMUM_EASE_FACTOR) -> float:
    """SM-2 ease update with the floor applied."""
    return max(minimum, ease_factor + ease_delta(quality))


def format_interval(days: int) -> str:
    """Short human label for a day count ("1d", "3.2mo", "1.5y")."""
    if days < 30:
        return f"{days}d"
    if days < 365:
        return f"{days / 30:.1f}mo"
    return f"{days / 365:.1f}y"


@dataclass
class SchedulerOutput:
    state: SchedulingState
    event: ReviewEvent


class SM2SchedulerConfig(BaseModel):
    """Configuration for the SM-2 Scheduler."""

    initial_ease: float = DEFAULT_EASE_FACTOR
    minimum_ease: float = MINIMUM_EASE_FACTOR
    hard_interval_factor: float = HARD_INTERVAL_FACTOR
    easy_bonus: float = EASY_BONUS
    relearn_delay: timedelta = RELEARN_DELAY
    quality_map: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_QUALITY_MAP)
    )

    @field_validator("quality_map")
    @classmethod
    def check_quality_map(cls, v: Dict[str, int]) -> Dict[str, int]:
        missing = {r.name for r in Rating} - set(v)
        if missing:
            raise ValueError(f"quality_map is missing ratings: {sorted(missing)}")
        for name, quality in v.items():
            if not 0 <= quality <= 5:
                raise ValueError(
                    f"Quality for {name} must be within 0-5, got {quality}."
                )
        return v


class BaseScheduler(ABC):
    """
    Abstract base class for all schedulers in flashdeck.
    """

    @abstractmethod
    def schedule(
        self, state: SchedulingState, rating: Rating, now: datetime
    ) -> SchedulingState:
        """
        Computes the next scheduling state from the current one and a rating.

        Args:
            state: The card's current scheduling state.
            rating: The rating given for the current review.
            now: The timestamp of the current review.

        Returns:
            The new SchedulingState. The input is not modified.
        """
        pass

    def compute_next_state(
        self, card: Card, new_rating: Any, review_ts: datetime
    ) -> SchedulerOutput:
        """
        Schedules a card and builds the ReviewEvent describing the transition.

        Raises:
            ValueError: If the new_rating is not a valid rating.
        """
        rating = Rating.parse(new_rating)
        ts = ensure_utc(review_ts)
        before = card.scheduling_state
        after = self.schedule(before, rating, ts)
        logger.debug(
            f"Card {card.id} rated {rating.name}: interval "
            f"{before.interval} -> {after.interval}, ease "
            f"{before.ease_factor:.3f} -> {after.ease_factor:.3f}"
        )
        event = ReviewEvent(
            timestamp=ts,
            rating=rating,
            interval_before=before.interval,
            interval_after=after.interval,
            ease_before=before.ease_factor,
            ease_after=after.ease_factor,
        )
        return SchedulerOutput(state=after, event=event)


class SM2Scheduler(BaseScheduler):
    """
    SM-2 implementation with Anki-style answer buttons.

    Again resets the card to a short relearning delay, Hard grows the interval
    by a fixed factor, Good by the ease factor and Easy by the ease factor
    times a bonus. The ease factor follows the published SM-2 update, using the
    configured quality score for each rating.
    """

    def __init__(self, config: Optional[SM2SchedulerConfig] = None):
        if config is None:
            config = SM2SchedulerConfig()
        self.config = config

    def quality_for(self, rating: Rating) -> int:
        return self.config.quality_map[rating.name]

    def next_ease(self, ease_factor: float, quality: int) -> float:
        return update_ease(ease_factor, quality, self.config.minimum_ease)

    def schedule(
        self, state: SchedulingState, rating: Rating, now: datetime
    ) -> SchedulingState:
        now = ensure_utc(now)
        ease = self.next_ease(state.ease_factor, self.quality_for(rating))

        if rating == Rating.Again:
            return SchedulingState(
                ease_factor=ease,
                interval=0,
                repetitions=0,
                lapses=state.lapses + 1,
                due_at=now + self.config.relearn_delay,
            )

        if rating == Rating.Hard:
            raw = state.interval * self.config.hard_interval_factor
        elif rating == Rating.Good:
            raw = state.interval * state.ease_factor
        else:
            raw = state.interval * state.ease_factor * self.config.easy_bonus

        # A new or lapsed card (interval 0) graduates to one day.
        interval = max(1, round_half_up(raw))
        return SchedulingState(
            ease_factor=ease,
            interval=interval,
            repetitions=state.repetitions + 1,
            lapses=state.lapses,
            due_at=now + timedelta(days=interval),
        )

    def preview_intervals(
        self, state: SchedulingState, now: datetime
    ) -> Dict[Rating, str]:
        """Label the wait each rating would produce, for the answer buttons."""
        labels: Dict[Rating, str] = {}
        for rating in Rating:
            result = self.schedule(state, rating, now)
            if result.interval == 0:
                minutes = int(self.config.relearn_delay.total_seconds() // 60)
                labels[rating] = f"{minutes}m"
            else:
                labels[rating] = format_interval(result.interval)
        return labels


def schedule(
    state: SchedulingState,
    rating: Rating,
    now: datetime,
    config: Optional[SM2SchedulerConfig] = None,
) -> SchedulingState:
    """Functional entry point: one SM-2 step with the given (or default) config."""
    return SM2Scheduler(config).schedule(state, rating, now)
