"""
Canonical card/deck data model.

Every importer, exporter, the scheduler and the store read and write these
types. Cards hold no reference to their deck; lookups scan the collection so
that serialization stays acyclic.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterator, List, Optional, Set, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .constants import (
    BACKUP_FORMAT_VERSION,
    DEFAULT_EASE_FACTOR,
    MATURE_INTERVAL_DAYS,
    MINIMUM_EASE_FACTOR,
)


def new_id() -> str:
    """Return a fresh identifier for a card or deck."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Ensures the given datetime is UTC. Assumes UTC if naive."""
    if ts.tzinfo is None or ts.tzinfo.utcoffset(ts) is None:
        return ts.replace(tzinfo=timezone.utc)
    if ts.tzinfo is not timezone.utc:
        return ts.astimezone(timezone.utc)
    return ts


def clamp_ease(value: float) -> float:
    """Apply the SM-2 ease floor."""
    return max(MINIMUM_EASE_FACTOR, value)


class Rating(IntEnum):
    """
    Represents the user's rating of their recall performance.

    Values match the answer buttons of Anki's review log.
    """

    Again = 1
    Hard = 2
    Good = 3
    Easy = 4

    @classmethod
    def parse(cls, value: Any) -> "Rating":
        """Accept a Rating, its integer value or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            for member in cls:
                if member.name.lower() == text.lower():
                    return member
            raise ValueError(
                f"Invalid rating: {value!r}. Must be one of Again, Hard, Good, Easy."
            )
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"Invalid rating: {value!r}.")
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Invalid rating: {value}. Must be 1-4 (1=Again, 2=Hard, 3=Good, 4=Easy)."
            ) from None


class ReviewEvent(BaseModel):
    """
    A single recorded review: when it happened, the answer given and the
    scheduling values before and after. Immutable once recorded.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    timestamp: datetime
    rating: Rating
    interval_before: int = Field(..., ge=0)
    interval_after: int = Field(..., ge=0)
    ease_before: float
    ease_after: float

    @field_validator("rating", mode="before")
    @classmethod
    def parse_rating(cls, v: Any) -> Rating:
        return Rating.parse(v)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class SchedulingState(BaseModel):
    """The subset of a card the scheduler reads and produces."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ease_factor: float = DEFAULT_EASE_FACTOR
    interval: int = Field(default=0, ge=0)
    repetitions: int = Field(default=0, ge=0)
    lapses: int = Field(default=0, ge=0)
    due_at: Optional[datetime] = None

    @field_validator("ease_factor")
    @classmethod
    def apply_ease_floor(cls, v: float) -> float:
        if math.isnan(v):
            raise ValueError("ease_factor must be a number.")
        return clamp_ease(v)


class Card(BaseModel):
    """
    A flashcard: question/answer text plus its SM-2 scheduling state and the
    append-only log of its reviews.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    id: str = Field(
        default_factory=new_id,
        min_length=1,
        description="Stable identifier assigned at creation, never reused.",
    )
    front: str = Field(..., description="Question text.")
    back: str = Field(..., description="Answer text.")
    tags: Set[str] = Field(default_factory=set)
    notes: str = Field(default="", description="Free-text notes about the card.")

    # SM-2 fields
    ease_factor: float = Field(
        default=DEFAULT_EASE_FACTOR,
        description="Interval growth multiplier; clamped to the 1.3 floor.",
    )
    interval: int = Field(
        default=0, ge=0, description="Days until next review; 0 = due now."
    )
    repetitions: int = Field(
        default=0, ge=0, description="Consecutive successful reviews."
    )
    lapses: int = Field(default=0, ge=0, description="Times rated Again.")

    # Tracking
    due_at: Optional[datetime] = Field(
        default=None,
        description="Next scheduled review. None means due now (never scheduled).",
    )
    last_reviewed: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    media: List[str] = Field(
        default_factory=list,
        description="Opaque media references carried through Anki packages.",
    )
    review_history: Tuple[ReviewEvent, ...] = Field(default_factory=tuple)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, tags: Set[str]) -> Set[str]:
        """Tags must be non-empty and free of whitespace (Anki splits on it)."""
        for tag in tags:
            if not tag or any(ch.isspace() for ch in tag):
                raise ValueError(f"Tag '{tag}' must be non-empty and contain no whitespace.")
        return tags

    @field_validator("ease_factor")
    @classmethod
    def apply_ease_floor(cls, v: float) -> float:
        """Clamp rather than reject ease factors under the floor."""
        if math.isnan(v):
            raise ValueError("ease_factor must be a number.")
        return clamp_ease(v)

    @field_validator("due_at", "last_reviewed", "created_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @property
    def is_new(self) -> bool:
        """A card that has never been reviewed."""
        return self.repetitions == 0 and not self.review_history

    @property
    def total_reviews(self) -> int:
        return len(self.review_history)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.due_at is None:
            return True
        return ensure_utc(now or utc_now()) >= self.due_at

    @property
    def scheduling_state(self) -> SchedulingState:
        return SchedulingState(
            ease_factor=self.ease_factor,
            interval=self.interval,
            repetitions=self.repetitions,
            lapses=self.lapses,
            due_at=self.due_at,
        )

    def apply_review(self, state: SchedulingState, event: ReviewEvent) -> None:
        """Adopt a scheduler result and append its review event."""
        self.ease_factor = state.ease_factor
        self.interval = state.interval
        self.repetitions = state.repetitions
        self.lapses = state.lapses
        self.due_at = state.due_at
        self.last_reviewed = event.timestamp
        self.review_history = self.review_history + (event,)

    def edit(
        self,
        front: Optional[str] = None,
        back: Optional[str] = None,
        tags: Optional[Set[str]] = None,
        notes: Optional[str] = None,
    ) -> None:
        """Change content only; scheduling state and history are untouched."""
        if front is not None:
            self.front = front
        if back is not None:
            self.back = back
        if tags is not None:
            self.tags = set(tags)
        if notes is not None:
            self.notes = notes


class DeckStats(BaseModel):
    """Statistics for a deck."""

    total_cards: int = 0
    new_cards: int = 0
    due_cards: int = 0
    learning_cards: int = 0
    mature_cards: int = 0


class Deck(BaseModel):
    """A named collection of cards, owned exclusively by the deck."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    cards: List[Card] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_studied: Optional[datetime] = None

    @field_validator("created_at", "last_studied")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_unique_card_ids(self) -> "Deck":
        seen: Set[str] = set()
        for card in self.cards:
            if card.id in seen:
                raise ValueError(
                    f"Duplicate card id '{card.id}' in deck '{self.name}'."
                )
            seen.add(card.id)
        return self

    def add_card(
        self,
        front: str,
        back: str,
        tags: Optional[Set[str]] = None,
        notes: str = "",
    ) -> Card:
        card = Card(front=front, back=back, tags=set(tags or ()), notes=notes)
        self.insert_card(card)
        return card

    def insert_card(self, card: Card) -> None:
        """Add an already-built card (importers), enforcing id uniqueness."""
        if self.get_card(card.id) is not None:
            raise ValueError(
                f"Card id '{card.id}' already exists in deck '{self.name}'."
            )
        self.cards.append(card)

    def get_card(self, card_id: str) -> Optional[Card]:
        for card in self.cards:
            if card.id == card_id:
                return card
        return None

    def edit_card(
        self,
        card_id: str,
        front: Optional[str] = None,
        back: Optional[str] = None,
        tags: Optional[Set[str]] = None,
        notes: Optional[str] = None,
    ) -> Optional[Card]:
        card = self.get_card(card_id)
        if card is None:
            return None
        card.edit(front=front, back=back, tags=tags, notes=notes)
        return card

    def delete_card(self, card_id: str) -> bool:
        for i, card in enumerate(self.cards):
            if card.id == card_id:
                del self.cards[i]
                return True
        return False

    def record_review(
        self, card_id: str, state: SchedulingState, event: ReviewEvent
    ) -> Optional[Card]:
        """Apply a scheduler result to one of this deck's cards."""
        card = self.get_card(card_id)
        if card is None:
            return None
        card.apply_review(state, event)
        return card

    def get_due_cards(self, now: Optional[datetime] = None) -> List[Card]:
        return [c for c in self.cards if c.is_due(now)]

    def get_new_cards(self) -> List[Card]:
        return [c for c in self.cards if c.is_new]

    def get_stats(self, now: Optional[datetime] = None) -> DeckStats:
        stats = DeckStats(total_cards=len(self.cards))
        for card in self.cards:
            if card.is_new:
                stats.new_cards += 1
            elif card.is_due(now):
                stats.due_cards += 1

            if card.interval >= MATURE_INTERVAL_DAYS:
                stats.mature_cards += 1
            elif not card.is_new:
                stats.learning_cards += 1
        return stats

    def info(self) -> "DeckInfo":
        return DeckInfo(
            id=self.id,
            name=self.name,
            description=self.description,
            card_count=len(self.cards),
        )


class DeckInfo(BaseModel):
    """Summary info for a deck."""

    id: str
    name: str
    description: str = ""
    card_count: int = 0


class Collection(BaseModel):
    """
    Top-level interchange unit: every deck, fully expanded with cards and
    review histories. Also the JSON backup document.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    version: int = BACKUP_FORMAT_VERSION
    created_at: datetime = Field(default_factory=utc_now)
    decks: List[Deck] = Field(default_factory=list)

    @field_validator("created_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_unique_ids(self) -> "Collection":
        deck_ids: Set[str] = set()
        card_ids: Set[str] = set()
        for deck in self.decks:
            if deck.id in deck_ids:
                raise ValueError(f"Duplicate deck id '{deck.id}'.")
            deck_ids.add(deck.id)
            for card in deck.cards:
                if card.id in card_ids:
                    raise ValueError(
                        f"Card id '{card.id}' appears in more than one deck."
                    )
                card_ids.add(card.id)
        return self

    def create_deck(self, name: str, description: str = "") -> Deck:
        deck = Deck(name=name, description=description)
        self.decks.append(deck)
        return deck

    def get_deck(self, deck_id: str) -> Optional[Deck]:
        for deck in self.decks:
            if deck.id == deck_id:
                return deck
        return None

    def find_deck_by_name(self, name: str) -> Optional[Deck]:
        wanted = name.lower()
        for deck in self.decks:
            if deck.name.lower() == wanted:
                return deck
        return None

    def delete_deck(self, deck_id: str) -> bool:
        for i, deck in enumerate(self.decks):
            if deck.id == deck_id:
                del self.decks[i]
                return True
        return False

    def iter_cards(self) -> Iterator[Tuple[Deck, Card]]:
        for deck in self.decks:
            for card in deck.cards:
                yield deck, card

    def find_card(self, card_id: str) -> Optional[Tuple[Deck, Card]]:
        """Locate a card and its owning deck by scanning."""
        for deck, card in self.iter_cards():
            if card.id == card_id:
                return deck, card
        return None

    @property
    def card_count(self) -> int:
        return sum(len(deck.cards) for deck in self.decks)
