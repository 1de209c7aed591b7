"""
Contains the business logic for importing decks into the store.
This logic is called by the `import` CLI commands in main.py.
"""

import logging
from pathlib import Path
from typing import List, Optional

from flashdeck.db.database import MATCH_BY_ID, MATCH_BY_NAME, DeckDatabase, MergeResult
from flashdeck.interchange import (
    read_anki_export,
    read_backup,
    read_csv_file,
    read_csv_folder,
)
from flashdeck.models import Deck

logger = logging.getLogger(__name__)


def import_csv_logic(
    db: DeckDatabase, path: Path, deck_name: Optional[str] = None
) -> MergeResult:
    """Import one CSV file as a deck; skipped if the deck name exists."""
    deck = read_csv_file(path, deck_name)
    return db.merge_decks([deck], match_by=MATCH_BY_NAME)


def import_folder_logic(db: DeckDatabase, folder: Path) -> MergeResult:
    """Import every *.csv file of a folder, one deck per file."""
    decks: List[Deck] = read_csv_folder(folder)
    if not decks:
        logger.warning(f"No CSV files found in {folder}")
    return db.merge_decks(decks, match_by=MATCH_BY_NAME)


def import_anki_logic(
    db: DeckDatabase, path: Path, deck_name: Optional[str] = None
) -> MergeResult:
    """Import an .apkg package or an Anki text export."""
    decks = read_anki_export(path, deck_name)
    return db.merge_decks(decks, match_by=MATCH_BY_NAME)


def import_backup_logic(db: DeckDatabase, path: Path) -> MergeResult:
    """Restore decks from a JSON backup, skipping decks whose id is stored."""
    collection = read_backup(path)
    return db.merge_decks(collection.decks, match_by=MATCH_BY_ID)
