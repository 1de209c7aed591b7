"""
Utility functions for data marshalling between Pydantic models and database rows.
This module keeps the database facade free of conversion details.
"""

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..exceptions import MarshallingError
from ..models import Card, Deck, ReviewEvent, ensure_utc


def to_db_timestamp(ts: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC timestamp for a TIMESTAMP column."""
    if ts is None:
        return None
    return ensure_utc(ts).replace(tzinfo=None)


def from_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def deck_to_db_params(deck: Deck, sort_order: int) -> Tuple:
    """(id, name, description, created_at, last_studied, sort_order)"""
    return (
        deck.id,
        deck.name,
        deck.description,
        to_db_timestamp(deck.created_at),
        to_db_timestamp(deck.last_studied),
        sort_order,
    )


def card_to_db_params(deck_id: str, sort_order: int, card: Card) -> Tuple:
    """
    Returns:
        (id, deck_id, sort_order, front, back, tags, notes, ease_factor, interval_days,
         repetitions, lapses, due_at, last_reviewed, created_at, media)
    """
    return (
        card.id,
        deck_id,
        sort_order,
        card.front,
        card.back,
        sorted(card.tags) if card.tags else None,
        card.notes,
        card.ease_factor,
        card.interval,
        card.repetitions,
        card.lapses,
        to_db_timestamp(card.due_at),
        to_db_timestamp(card.last_reviewed),
        to_db_timestamp(card.created_at),
        list(card.media) if card.media else None,
    )


def cards_to_db_params_list(deck_id: str, cards: Sequence[Card]) -> List[Tuple]:
    return [card_to_db_params(deck_id, i, card) for i, card in enumerate(cards)]


def review_to_db_params(card_id: str, seq: int, event: ReviewEvent) -> Tuple:
    return (
        card_id,
        seq,
        to_db_timestamp(event.timestamp),
        int(event.rating),
        event.interval_before,
        event.interval_after,
        event.ease_before,
        event.ease_after,
    )


def reviews_to_db_params_list(cards: Sequence[Card]) -> List[Tuple]:
    return [
        review_to_db_params(card.id, seq, event)
        for card in cards
        for seq, event in enumerate(card.review_history)
    ]


def db_row_to_review(row_dict: Dict[str, Any]) -> ReviewEvent:
    try:
        return ReviewEvent(
            timestamp=from_db_timestamp(row_dict["ts"]),
            rating=row_dict["rating"],
            interval_before=row_dict["interval_before"],
            interval_after=row_dict["interval_after"],
            ease_before=row_dict["ease_before"],
            ease_after=row_dict["ease_after"],
        )
    except (ValidationError, KeyError) as e:
        raise MarshallingError(
            f"Failed to parse review from DB row: {row_dict}. Error: {e}",
            original_exception=e,
        ) from e


def db_row_to_card(
    row_dict: Dict[str, Any], reviews: Sequence[ReviewEvent] = ()
) -> Card:
    """
    Build a Card from a cards row plus its review events (in sequence order).

    Raises:
        MarshallingError: If the row does not validate as a Card.
    """
    try:
        return Card(
            id=row_dict["id"],
            front=row_dict["front"],
            back=row_dict["back"],
            tags=set(row_dict.get("tags") or ()),
            notes=row_dict.get("notes") or "",
            ease_factor=row_dict["ease_factor"],
            interval=row_dict["interval_days"],
            repetitions=row_dict["repetitions"],
            lapses=row_dict["lapses"],
            due_at=from_db_timestamp(row_dict.get("due_at")),
            last_reviewed=from_db_timestamp(row_dict.get("last_reviewed")),
            created_at=from_db_timestamp(row_dict["created_at"]),
            media=list(row_dict.get("media") or ()),
            review_history=tuple(reviews),
        )
    except (ValidationError, KeyError) as e:
        raise MarshallingError(
            f"Failed to parse card from DB row: {row_dict}. Error: {e}",
            original_exception=e,
        ) from e


def db_row_to_deck(row_dict: Dict[str, Any], cards: Sequence[Card] = ()) -> Deck:
    try:
        return Deck(
            id=row_dict["id"],
            name=row_dict["name"],
            description=row_dict.get("description") or "",
            cards=list(cards),
            created_at=from_db_timestamp(row_dict["created_at"]),
            last_studied=from_db_timestamp(row_dict.get("last_studied")),
        )
    except (ValidationError, KeyError) as e:
        raise MarshallingError(
            f"Failed to parse deck from DB row: {row_dict}. Error: {e}",
            original_exception=e,
        ) from e


def find_latest_backup(db_path: Path) -> Optional[Path]:
    """
    Locate the most recent backup of db_path in the "backups" directory next
    to it, or None if there is none.
    """
    backup_dir = db_path.parent / "backups"
    if not backup_dir.exists():
        return None

    backup_files = list(backup_dir.glob(f"{db_path.stem}-backup-*{db_path.suffix}"))
    if not backup_files:
        return None

    # Names embed the timestamp, so the lexical maximum is the latest.
    return max(backup_files, key=lambda p: p.name)


def backup_database(db_path: Path) -> Path:
    """
    Creates a timestamped copy of the database file under "backups".

    Returns:
        The path to the created backup file, or db_path itself when there is
        no database file to copy.
    """
    if not db_path.exists():
        return db_path

    backup_dir = db_path.parent / "backups"
    backup_dir.mkdir(exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
    backup_path = backup_dir / f"{db_path.stem}-backup-{timestamp}{db_path.suffix}"

    shutil.copy2(db_path, backup_path)
    return backup_path
