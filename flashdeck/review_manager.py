"""
This module defines the ReviewSessionManager class, which runs a study
session over one deck: it builds the queue of cards to study, hands them out
one by one and records the answers through the ReviewProcessor.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .constants import DEFAULT_NEW_CARDS_PER_SESSION
from .db.database import DeckDatabase
from .models import Card, Deck, Rating, utc_now
from .review_processor import ReviewProcessor
from .scheduler import BaseScheduler

logger = logging.getLogger(__name__)


def build_study_queue(
    deck: Deck,
    now: Optional[datetime] = None,
    new_card_limit: int = DEFAULT_NEW_CARDS_PER_SESSION,
) -> List[Card]:
    """
    Cards to study now: due reviewed cards (earliest first), then up to
    new_card_limit new cards in deck order.
    """
    now = now or utc_now()
    due = [c for c in deck.cards if not c.is_new and c.is_due(now)]
    due.sort(key=lambda c: c.due_at or now)
    new = deck.get_new_cards()[: max(0, new_card_limit)]
    return due + new


class ReviewSessionManager:
    """
    Manages a review session for one deck.

    Cards rated Again are due again within minutes, so they go back to the
    end of the queue and come up again in the same session.
    """

    def __init__(
        self,
        db_manager: DeckDatabase,
        scheduler: BaseScheduler,
        deck_id: str,
        new_card_limit: int = DEFAULT_NEW_CARDS_PER_SESSION,
    ):
        self.db = db_manager
        self.scheduler = scheduler
        self.deck_id = deck_id
        self.new_card_limit = new_card_limit
        self.deck: Optional[Deck] = None
        self.review_queue: List[Card] = []
        self.session_card_ids: Set[str] = set()
        self.reviews_done = 0
        self.ratings: Dict[str, int] = {r.name: 0 for r in Rating}
        self.review_processor = ReviewProcessor(db_manager, scheduler)

    def initialize_session(self, now: Optional[datetime] = None) -> None:
        """Load the deck and build the study queue."""
        self.deck = self.db.load_deck(self.deck_id)
        self.review_queue = build_study_queue(self.deck, now, self.new_card_limit)
        self.session_card_ids = {card.id for card in self.review_queue}
        logger.info(
            f"Initialized session for deck '{self.deck.name}' with "
            f"{len(self.review_queue)} cards."
        )

    def get_next_card(self) -> Optional[Card]:
        if not self.review_queue:
            logger.info("Review queue is empty. Session may be complete.")
            return None
        return self.review_queue[0]

    def _get_card_from_queue(self, card_id: str) -> Optional[Card]:
        for card in self.review_queue:
            if card.id == card_id:
                return card
        return None

    def _remove_card_from_queue(self, card_id: str) -> None:
        self.review_queue = [c for c in self.review_queue if c.id != card_id]

    def submit_review(
        self, card_id: str, rating: Any, reviewed_at: Optional[datetime] = None
    ) -> Card:
        """
        Record an answer for a card of the current queue.

        Raises:
            ValueError: If the card is not in the current session queue.
        """
        if self.deck is None:
            raise ValueError("Session has not been initialized.")
        if self._get_card_from_queue(card_id) is None:
            raise ValueError(f"Card {card_id} not found in the current review session.")

        parsed = Rating.parse(rating)
        ts = reviewed_at or utc_now()
        try:
            updated = self.review_processor.process_review(
                self.deck, card_id, parsed, reviewed_at=ts
            )
        except Exception as e:
            logger.error(f"Failed to submit review for card {card_id}: {e}")
            raise

        self._remove_card_from_queue(card_id)
        if parsed == Rating.Again:
            self.review_queue.append(updated)
        self.reviews_done += 1
        self.ratings[parsed.name] += 1
        return updated

    def end_session(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Stamp the deck as studied (if anything was reviewed) and summarize."""
        if self.deck is not None and self.reviews_done:
            self.deck.last_studied = now or utc_now()
            self.db.save_deck(self.deck)
        return self.get_session_stats()

    def get_session_stats(self) -> Dict[str, Any]:
        return {
            "total_cards": len(self.session_card_ids),
            "reviewed_cards": self.reviews_done,
            "remaining_cards": len(self.review_queue),
            "ratings": dict(self.ratings),
        }
