"""
Contains the business logic for exporting decks to various formats.
This logic is called by the `export` CLI commands in main.py.
"""

import logging
from pathlib import Path
from typing import List, Optional

from flashdeck.db.database import DeckDatabase
from flashdeck.exceptions import DeckNotFoundError
from flashdeck.interchange import write_backup, write_package
from flashdeck.models import Collection

logger = logging.getLogger(__name__)


def _select_decks(db: DeckDatabase, decks: Optional[List[str]]) -> Collection:
    """
    The stored collection, narrowed to the given deck ids or names.

    Raises:
        DeckNotFoundError: If a requested deck does not exist.
    """
    collection = db.load_collection()
    if not decks:
        return collection

    selected = []
    for wanted in decks:
        deck = collection.get_deck(wanted) or collection.find_deck_by_name(wanted)
        if deck is None:
            raise DeckNotFoundError(f"Deck '{wanted}' not found.")
        if all(d.id != deck.id for d in selected):
            selected.append(deck)
    return Collection(created_at=collection.created_at, decks=selected)


def export_anki_logic(
    db: DeckDatabase, output: Path, decks: Optional[List[str]] = None
) -> int:
    """
    Write decks to an Anki package.

    Returns:
        The number of decks exported.
    """
    collection = _select_decks(db, decks)
    if not collection.decks:
        logger.warning("No decks found in the database to export.")
        return 0
    write_package(output, collection)
    logger.info(f"Exported {len(collection.decks)} decks to {output}")
    return len(collection.decks)


def export_backup_logic(db: DeckDatabase, output: Path) -> int:
    """Write every deck to a JSON backup. Returns the number of decks."""
    collection = db.load_collection()
    write_backup(output, collection)
    return len(collection.decks)
