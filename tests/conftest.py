import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest

from flashdeck.db import DeckDatabase
from flashdeck.models import Card, Collection, Deck, Rating, ReviewEvent

UTC = timezone.utc
T0 = datetime(2024, 3, 1, 9, 30, 0, tzinfo=UTC)


# each test runs on cwd to its temp dir
@pytest.fixture(autouse=True)
def go_to_tmpdir(request):
    """Run every test with its tmpdir as the working directory."""
    tmpdir = request.getfixturevalue("tmpdir")
    with tmpdir.as_cwd():
        yield


# --- Database Fixtures ---
@pytest.fixture
def db_path_memory() -> str:
    return ":memory:"


@pytest.fixture
def db_path_file(tmp_path: Path) -> Path:
    return tmp_path / "test_decks.db"


@pytest.fixture(params=["memory", "file"])
def db_manager(
    request, db_path_memory: str, db_path_file: Path
) -> Generator[DeckDatabase, None, None]:
    """
    A DeckDatabase, in-memory or file-backed depending on the parameter.
    The connection is closed and the file removed on teardown.
    """
    if request.param == "memory":
        db_man = DeckDatabase(db_path_memory)
    else:
        db_man = DeckDatabase(db_path_file)
    try:
        yield db_man
    finally:
        db_man.close_connection()
        if request.param == "file" and db_path_file.exists():
            try:
                db_path_file.unlink()
            except OSError as e:
                logging.warning(
                    f"Error removing temporary DB file in test fixture teardown: {e}"
                )


@pytest.fixture
def initialized_db_manager(db_manager: DeckDatabase) -> DeckDatabase:
    db_manager.initialize_schema()
    return db_manager


# --- Model Fixtures ---
@pytest.fixture
def new_card() -> Card:
    return Card(
        id="card-new",
        front="Bonjour",
        back="Hello",
        tags={"french", "greeting"},
        created_at=T0,
    )


@pytest.fixture
def reviewed_card() -> Card:
    """A card with two recorded reviews and a future due date."""
    first = ReviewEvent(
        timestamp=T0,
        rating=Rating.Good,
        interval_before=0,
        interval_after=1,
        ease_before=2.5,
        ease_after=2.5,
    )
    second = ReviewEvent(
        timestamp=T0 + timedelta(days=1),
        rating=Rating.Easy,
        interval_before=1,
        interval_after=3,
        ease_before=2.5,
        ease_after=2.6,
    )
    return Card(
        id="card-reviewed",
        front="Merci",
        back="Thank you",
        tags={"french"},
        notes="Informal; use merci beaucoup for emphasis.",
        ease_factor=2.6,
        interval=3,
        repetitions=2,
        lapses=0,
        due_at=T0 + timedelta(days=4),
        last_reviewed=T0 + timedelta(days=1),
        created_at=T0 - timedelta(days=2),
        review_history=(first, second),
    )


@pytest.fixture
def sample_deck(new_card: Card, reviewed_card: Card) -> Deck:
    return Deck(
        id="deck-french",
        name="French",
        description="Everyday phrases",
        cards=[reviewed_card, new_card],
        created_at=T0 - timedelta(days=3),
        last_studied=T0 + timedelta(days=1),
    )


@pytest.fixture
def sample_collection(sample_deck: Deck) -> Collection:
    empty = Deck(id="deck-empty", name="Empty Deck", created_at=T0)
    spanish = Deck(
        id="deck-spanish",
        name="Spanish Verbs",
        created_at=T0,
        cards=[
            Card(
                id="card-es-1",
                front="hablar",
                back="to speak\nto talk",
                created_at=T0,
                media=["hablar.mp3"],
            )
        ],
    )
    return Collection(created_at=T0 - timedelta(days=5), decks=[sample_deck, spanish, empty])
