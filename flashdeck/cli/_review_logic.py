from pathlib import Path
from typing import Optional

from flashdeck.cli.review_ui import start_review_flow
from flashdeck.config import settings
from flashdeck.db.database import DeckDatabase
from flashdeck.review_manager import ReviewSessionManager
from flashdeck.scheduler import SM2Scheduler


def review_logic(
    deck: str,
    db_path: Path,
    new_card_limit: Optional[int] = None,
):
    """
    Set up and start a review session for the specified deck.

    Parameters:
        deck (str): Id or name of the deck to review.
        db_path (Path): Path to the deck database file.
        new_card_limit (Optional[int]): Maximum new cards to introduce;
            defaults to the configured new_cards_per_session.
    """
    with DeckDatabase(db_path=db_path) as db_manager:
        target = db_manager.resolve_deck(deck)
        scheduler = SM2Scheduler(settings.scheduler_config())
        manager = ReviewSessionManager(
            db_manager=db_manager,
            scheduler=scheduler,
            deck_id=target.id,
            new_card_limit=(
                settings.new_cards_per_session
                if new_card_limit is None
                else new_card_limit
            ),
        )
        start_review_flow(manager)
