"""
Shared review processing logic for flashdeck.

Both the interactive review session and one-off reviews go through
ReviewProcessor, so a review is always scheduled, recorded and persisted the
same way:

1. Timestamp handling
2. Scheduler computation
3. Applying the result to the card (state plus appended ReviewEvent)
4. Database persistence
"""

import logging
from datetime import datetime
from typing import Any, Optional

from .db.database import DeckDatabase
from .exceptions import CardNotFoundError
from .models import Card, Deck, utc_now
from .scheduler import BaseScheduler, SchedulerOutput

logger = logging.getLogger(__name__)


class ReviewProcessor:
    """Processes review submissions with consistent logic across workflows."""

    def __init__(self, db_manager: DeckDatabase, scheduler: BaseScheduler):
        """
        Args:
            db_manager: Store the reviewed card is written back to.
            scheduler: Scheduler computing the next state.
        """
        self.db_manager = db_manager
        self.scheduler = scheduler

    def process_review(
        self,
        deck: Deck,
        card_id: str,
        rating: Any,
        reviewed_at: Optional[datetime] = None,
    ) -> Card:
        """
        Review one card of a deck and persist the result.

        The deck object is updated in place (the card's scheduling state and
        review history) and the card is saved to the store.

        Args:
            deck: The deck owning the card.
            card_id: Id of the card being reviewed.
            rating: A Rating, its value 1-4 or its name.
            reviewed_at: Review timestamp (defaults to now).

        Returns:
            The updated Card.

        Raises:
            CardNotFoundError: If the card is not in the deck.
            ValueError: If the rating is invalid.
            DatabaseError: If persisting the card fails.
        """
        ts = reviewed_at or utc_now()
        card = deck.get_card(card_id)
        if card is None:
            raise CardNotFoundError(f"Card '{card_id}' not found in deck '{deck.name}'.")

        logger.debug(f"Processing review for card {card_id} with rating {rating}")

        try:
            output: SchedulerOutput = self.scheduler.compute_next_state(
                card=card, new_rating=rating, review_ts=ts
            )
            deck.record_review(card_id, output.state, output.event)
            self.db_manager.save_card(deck.id, card)

            logger.debug(
                f"Review processed for card {card_id}. "
                f"Interval: {card.interval}d, next due: {card.due_at}"
            )
            return card
        except Exception:
            logger.exception(f"Failed to process review for card {card_id}")
            raise
