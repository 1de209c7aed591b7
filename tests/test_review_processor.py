"""
Tests for the ReviewProcessor class.

The ReviewProcessor is the single path through which a review is scheduled,
recorded on the card and written back to the store.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from flashdeck.db.database import DeckDatabase
from flashdeck.exceptions import CardNotFoundError, CardOperationError
from flashdeck.models import Deck, Rating
from flashdeck.review_processor import ReviewProcessor
from flashdeck.scheduler import SM2Scheduler

NOW = datetime(2024, 3, 10, 18, 0, 0, tzinfo=timezone.utc)


class TestReviewProcessor:
    """Test the ReviewProcessor class."""

    @pytest.fixture
    def in_memory_db(self, sample_deck: Deck):
        """An in-memory database holding the sample deck."""
        db = DeckDatabase(":memory:")
        db.initialize_schema()
        db.save_deck(sample_deck)
        yield db
        db.close_connection()

    def test_process_review_updates_and_persists(self, in_memory_db, sample_deck):
        processor = ReviewProcessor(in_memory_db, SM2Scheduler())

        card = processor.process_review(sample_deck, "card-reviewed", Rating.Good, NOW)

        # 3 days at ease 2.6 -> round(7.8)
        assert card.interval == 8
        assert card.repetitions == 3
        assert card.due_at == NOW + timedelta(days=8)
        assert card.last_reviewed == NOW
        assert len(card.review_history) == 3
        assert card.review_history[-1].rating == Rating.Good

        stored = in_memory_db.load_deck(sample_deck.id).get_card("card-reviewed")
        assert stored.model_dump() == card.model_dump()

    def test_process_review_accepts_rating_names(self, in_memory_db, sample_deck):
        processor = ReviewProcessor(in_memory_db, SM2Scheduler())
        card = processor.process_review(sample_deck, "card-new", "again", NOW)

        assert card.interval == 0
        assert card.lapses == 1
        assert card.due_at == NOW + timedelta(minutes=10)
        assert not card.is_new

    def test_process_review_defaults_to_now(self, in_memory_db, sample_deck):
        processor = ReviewProcessor(in_memory_db, SM2Scheduler())
        before = datetime.now(timezone.utc)
        card = processor.process_review(sample_deck, "card-new", 3)
        assert card.last_reviewed >= before

    def test_unknown_card(self, in_memory_db, sample_deck):
        processor = ReviewProcessor(in_memory_db, SM2Scheduler())
        with pytest.raises(CardNotFoundError):
            processor.process_review(sample_deck, "missing", Rating.Good, NOW)

    def test_invalid_rating_leaves_card_untouched(self, in_memory_db, sample_deck):
        processor = ReviewProcessor(in_memory_db, SM2Scheduler())
        with pytest.raises(ValueError, match="Invalid rating"):
            processor.process_review(sample_deck, "card-new", 7, NOW)
        assert sample_deck.get_card("card-new").is_new
        assert in_memory_db.load_deck(sample_deck.id).get_card("card-new").is_new

    def test_database_failure_propagates(self, sample_deck):
        mock_db = MagicMock(spec=DeckDatabase)
        mock_db.save_card.side_effect = CardOperationError("disk full")
        processor = ReviewProcessor(mock_db, SM2Scheduler())

        with pytest.raises(CardOperationError, match="disk full"):
            processor.process_review(sample_deck, "card-new", Rating.Easy, NOW)
        mock_db.save_card.assert_called_once()

    def test_scheduler_is_called_with_card_and_timestamp(self, in_memory_db, sample_deck):
        scheduler = SM2Scheduler()
        spy = MagicMock(wraps=scheduler.compute_next_state)
        scheduler.compute_next_state = spy
        processor = ReviewProcessor(in_memory_db, scheduler)

        processor.process_review(sample_deck, "card-new", Rating.Hard, NOW)

        spy.assert_called_once()
        kwargs = spy.call_args.kwargs
        assert kwargs["card"].id == "card-new"
        assert kwargs["new_rating"] == Rating.Hard
        assert kwargs["review_ts"] == NOW
