"""
DuckDB persistence for flashdeck.

DeckDatabase is the store the CLI and the review flow talk to. Decks are
saved whole (deck row, card rows, review rows) inside one transaction; single
cards can be written back after a review without rewriting their deck.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import duckdb

from ..exceptions import (
    CardNotFoundError,
    CardOperationError,
    DatabaseConnectionError,
    DatabaseError,
    DeckNotFoundError,
    MarshallingError,
)
from ..models import Card, Collection, Deck, DeckInfo, ReviewEvent, new_id, utc_now
from . import db_utils
from .connection import ConnectionHandler
from .schema_manager import SchemaManager

# --- Logging Setup ---
logger = logging.getLogger(__name__)

MATCH_BY_ID = "id"
MATCH_BY_NAME = "name"


def _rows_to_dicts(cursor: duckdb.DuckDBPyConnection) -> List[Dict[str, Any]]:
    """Convert cursor results to list of dictionaries using column names."""
    rows = cursor.fetchall()
    if not rows:
        return []
    description = cursor.description
    if description is None:
        return []
    columns = [desc[0] for desc in description]
    return [dict(zip(columns, row, strict=True)) for row in rows]


@dataclass
class MergeResult:
    """Outcome of merging imported decks into the store."""

    imported: List[Tuple[str, int]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def imported_cards(self) -> int:
        return sum(count for _, count in self.imported)


class DeckDatabase:
    """
    Acts as a Facade for the database subsystem, providing a simple, high-level
    interface for all deck and card persistence.

    It coordinates the ConnectionHandler, SchemaManager, and data marshalling
    utilities. Intended for use as a context manager.
    """

    def __init__(self, db_path: Union[str, Path], read_only: bool = False):
        """
        Args:
            db_path: Path to the database file. Use ':memory:' for an
                in-memory database.
            read_only: If True, open the database in read-only mode.
        """
        self._handler = ConnectionHandler(db_path=db_path, read_only=read_only)
        self._schema_manager = SchemaManager(self._handler)
        logger.info(f"DeckDatabase initialized for DB at: {self._handler.db_path_resolved}")

    @property
    def db_path_resolved(self) -> Path:
        return self._handler.db_path_resolved

    @property
    def read_only(self) -> bool:
        return self._handler.read_only

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        return self._handler.get_connection()

    def close_connection(self) -> None:
        self._handler.close_connection()

    def __enter__(self) -> "DeckDatabase":
        """Open the connection and create the schema for a new writable DB."""
        self.get_connection()
        if self._handler.is_new_db and not self._handler.read_only:
            self.initialize_schema()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Ensures the connection is closed on exiting the context."""
        self.close_connection()

    def initialize_schema(self, force_recreate_tables: bool = False) -> None:
        self._schema_manager.initialize_schema(
            force_recreate_tables=force_recreate_tables
        )

    def _require_writable(self, operation: str) -> None:
        if self.read_only:
            raise DatabaseConnectionError(f"Cannot {operation} in read-only mode.")

    # --- Transactions ---

    def _run_in_transaction(self, operation: str, work) -> Any:
        """
        Run work(cursor) inside a transaction, rolling back on failure.

        DatabaseErrors raised by work propagate unchanged; duckdb errors are
        wrapped in a CardOperationError naming the operation.
        """
        conn = self.get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.begin()
                try:
                    result = work(cursor)
                    cursor.commit()
                except BaseException:
                    cursor.rollback()
                    raise
            return result
        except DatabaseError:
            logger.error(f"Error during {operation}; transaction rolled back.")
            raise
        except duckdb.Error as e:
            logger.error(f"Error during {operation}: {e}")
            raise CardOperationError(
                f"Failed to {operation}: {e}", original_exception=e
            ) from e

    # --- Deck Operations ---
    # fmt: off
    _INSERT_DECK_SQL = """
        INSERT INTO decks (id, name, description, created_at, last_studied, sort_order)
        VALUES ($1, $2, $3, $4, $5, $6);
    """
    _INSERT_CARD_SQL = """
        INSERT INTO cards (id, deck_id, sort_order, front, back, tags, notes, ease_factor,
                           interval_days, repetitions, lapses, due_at, last_reviewed,
                           created_at, media)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15);
    """
    _INSERT_REVIEW_SQL = """
        INSERT INTO reviews (card_id, seq, ts, rating, interval_before, interval_after,
                             ease_before, ease_after)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8);
    """
    # fmt: on

    @staticmethod
    def _deck_sort_order(cursor, deck_id: str) -> int:
        row = cursor.execute(
            "SELECT sort_order FROM decks WHERE id = $1;", (deck_id,)
        ).fetchone()
        if row is not None:
            return row[0]
        row = cursor.execute("SELECT MAX(sort_order) FROM decks;").fetchone()
        return (row[0] + 1) if row and row[0] is not None else 0

    @staticmethod
    def _delete_deck_rows(cursor, deck_id: str, card_ids: List[str]) -> None:
        """Remove a deck's rows plus any rows for the given card ids."""
        cursor.execute(
            "DELETE FROM reviews WHERE card_id IN "
            "(SELECT id FROM cards WHERE deck_id = $1);",
            (deck_id,),
        )
        cursor.execute("DELETE FROM cards WHERE deck_id = $1;", (deck_id,))
        if card_ids:
            cursor.execute(
                "DELETE FROM reviews WHERE list_contains($1, card_id);", (card_ids,)
            )
            cursor.execute(
                "DELETE FROM cards WHERE list_contains($1, id);", (card_ids,)
            )
        cursor.execute("DELETE FROM decks WHERE id = $1;", (deck_id,))

    def _write_deck(self, cursor, deck: Deck, sort_order: int) -> None:
        try:
            deck_params = db_utils.deck_to_db_params(deck, sort_order)
            card_params = db_utils.cards_to_db_params_list(deck.id, deck.cards)
            review_params = db_utils.reviews_to_db_params_list(deck.cards)
        except MarshallingError as e:
            raise CardOperationError(
                f"Failed to prepare deck '{deck.name}' for the database.",
                original_exception=e,
            ) from e

        self._delete_deck_rows(cursor, deck.id, [c.id for c in deck.cards])
        cursor.execute(self._INSERT_DECK_SQL, deck_params)
        if card_params:
            cursor.executemany(self._INSERT_CARD_SQL, card_params)
        if review_params:
            cursor.executemany(self._INSERT_REVIEW_SQL, review_params)

    def save_deck(self, deck: Deck) -> None:
        """
        Persist a deck, replacing any stored version of it.

        The deck keeps its position among the stored decks; a new deck is
        appended after the others.
        """
        self._require_writable("save deck")

        def work(cursor) -> None:
            self._write_deck(cursor, deck, self._deck_sort_order(cursor, deck.id))

        self._run_in_transaction(f"save deck '{deck.name}'", work)
        logger.info(f"Saved deck '{deck.name}' ({len(deck.cards)} cards)")

    def _load_reviews(
        self, conn, deck_ids: Optional[List[str]] = None
    ) -> Dict[str, List[ReviewEvent]]:
        sql = (
            "SELECT r.* FROM reviews r JOIN cards c ON r.card_id = c.id"
        )
        params: List[Any] = []
        if deck_ids is not None:
            sql += " WHERE list_contains($1, c.deck_id)"
            params.append(deck_ids)
        sql += " ORDER BY r.card_id, r.seq;"
        reviews: Dict[str, List[ReviewEvent]] = defaultdict(list)
        for row in _rows_to_dicts(conn.execute(sql, params)):
            reviews[row["card_id"]].append(db_utils.db_row_to_review(row))
        return reviews

    def _load_decks(self, deck_ids: Optional[List[str]] = None) -> List[Deck]:
        conn = self.get_connection()
        deck_sql = "SELECT * FROM decks"
        card_sql = "SELECT * FROM cards"
        params: List[Any] = []
        if deck_ids is not None:
            deck_sql += " WHERE list_contains($1, id)"
            card_sql += " WHERE list_contains($1, deck_id)"
            params.append(deck_ids)
        deck_sql += " ORDER BY sort_order, name;"
        card_sql += " ORDER BY deck_id, sort_order;"

        try:
            deck_rows = _rows_to_dicts(conn.execute(deck_sql, params))
            card_rows = _rows_to_dicts(conn.execute(card_sql, params))
            reviews = self._load_reviews(conn, deck_ids)

            cards_by_deck: Dict[str, List[Card]] = defaultdict(list)
            for row in card_rows:
                cards_by_deck[row["deck_id"]].append(
                    db_utils.db_row_to_card(row, reviews.get(row["id"], ()))
                )
            return [
                db_utils.db_row_to_deck(row, cards_by_deck.get(row["id"], ()))
                for row in deck_rows
            ]
        except MarshallingError as e:
            raise CardOperationError(
                "Failed to parse decks from database.", original_exception=e
            ) from e
        except duckdb.Error as e:
            logger.error(f"Error loading decks: {e}")
            raise CardOperationError(
                f"Failed to load decks: {e}", original_exception=e
            ) from e

    def load_deck(self, deck_id: str) -> Deck:
        """
        Raises:
            DeckNotFoundError: If no deck with this id is stored.
        """
        decks = self._load_decks([deck_id])
        if not decks:
            raise DeckNotFoundError(f"Deck '{deck_id}' not found.")
        return decks[0]

    def _find_deck_id(self, name: str) -> Optional[str]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT id FROM decks WHERE lower(name) = lower($1) "
                "ORDER BY sort_order LIMIT 1;",
                (name,),
            ).fetchone()
        except duckdb.Error as e:
            raise CardOperationError(
                f"Failed to look up deck '{name}': {e}", original_exception=e
            ) from e
        return row[0] if row else None

    def get_deck_by_name(self, name: str) -> Optional[Deck]:
        """Case-insensitive lookup; the first matching deck wins."""
        deck_id = self._find_deck_id(name)
        return self.load_deck(deck_id) if deck_id is not None else None

    def deck_name_exists(self, name: str) -> bool:
        return self._find_deck_id(name) is not None

    def resolve_deck(self, id_or_name: str) -> Deck:
        """
        Find a deck by exact id, then by name.

        Raises:
            DeckNotFoundError: If neither matches.
        """
        decks = self._load_decks([id_or_name])
        if decks:
            return decks[0]
        deck = self.get_deck_by_name(id_or_name)
        if deck is None:
            raise DeckNotFoundError(f"Deck '{id_or_name}' not found.")
        return deck

    def delete_deck(self, deck_id: str) -> bool:
        """Delete a deck and its cards. Returns False if there was no such deck."""
        self._require_writable("delete deck")

        def work(cursor) -> bool:
            row = cursor.execute(
                "SELECT COUNT(*) FROM decks WHERE id = $1;", (deck_id,)
            ).fetchone()
            if not row or row[0] == 0:
                return False
            self._delete_deck_rows(cursor, deck_id, [])
            return True

        deleted = self._run_in_transaction(f"delete deck '{deck_id}'", work)
        if deleted:
            logger.info(f"Deleted deck '{deck_id}'")
        return deleted

    def list_decks(self) -> List[DeckInfo]:
        conn = self.get_connection()
        sql = """
            SELECT d.id, d.name, d.description, COUNT(c.id) AS card_count
            FROM decks d LEFT JOIN cards c ON c.deck_id = d.id
            GROUP BY d.id, d.name, d.description, d.sort_order
            ORDER BY d.sort_order, d.name;
        """
        try:
            rows = _rows_to_dicts(conn.execute(sql))
        except duckdb.Error as e:
            logger.error(f"Could not list decks due to a database error: {e}")
            raise CardOperationError(
                "Could not list decks.", original_exception=e
            ) from e
        return [
            DeckInfo(
                id=row["id"],
                name=row["name"],
                description=row["description"] or "",
                card_count=row["card_count"],
            )
            for row in rows
        ]

    # --- Card Operations ---

    def save_card(self, deck_id: str, card: Card) -> None:
        """
        Write one card (and its review history) back to its deck.

        Raises:
            DeckNotFoundError: If the deck is not stored.
        """
        self._require_writable("save card")
        review_params = db_utils.reviews_to_db_params_list([card])

        def work(cursor) -> None:
            if cursor.execute(
                "SELECT COUNT(*) FROM decks WHERE id = $1;", (deck_id,)
            ).fetchone()[0] == 0:
                raise DeckNotFoundError(f"Deck '{deck_id}' not found.")

            existing = cursor.execute(
                "SELECT deck_id, sort_order FROM cards WHERE id = $1;", (card.id,)
            ).fetchone()
            if existing is not None and existing[0] == deck_id:
                sort_order = existing[1]
            else:
                row = cursor.execute(
                    "SELECT MAX(sort_order) FROM cards WHERE deck_id = $1;",
                    (deck_id,),
                ).fetchone()
                sort_order = (row[0] + 1) if row and row[0] is not None else 0

            cursor.execute("DELETE FROM reviews WHERE card_id = $1;", (card.id,))
            cursor.execute("DELETE FROM cards WHERE id = $1;", (card.id,))
            cursor.execute(
                self._INSERT_CARD_SQL,
                db_utils.card_to_db_params(deck_id, sort_order, card),
            )
            if review_params:
                cursor.executemany(self._INSERT_REVIEW_SQL, review_params)

        self._run_in_transaction(f"save card '{card.id}'", work)
        logger.debug(f"Saved card {card.id} in deck {deck_id}")

    def delete_card(self, deck_id: str, card_id: str) -> None:
        """
        Raises:
            CardNotFoundError: If the card is not in the given deck.
        """
        self._require_writable("delete card")

        def work(cursor) -> None:
            row = cursor.execute(
                "SELECT COUNT(*) FROM cards WHERE id = $1 AND deck_id = $2;",
                (card_id, deck_id),
            ).fetchone()
            if not row or row[0] == 0:
                raise CardNotFoundError(
                    f"Card '{card_id}' not found in deck '{deck_id}'."
                )
            cursor.execute("DELETE FROM reviews WHERE card_id = $1;", (card_id,))
            cursor.execute("DELETE FROM cards WHERE id = $1;", (card_id,))

        self._run_in_transaction(f"delete card '{card_id}'", work)
        logger.info(f"Deleted card {card_id} from deck {deck_id}")

    def _stored_card_ids(self) -> Set[str]:
        conn = self.get_connection()
        return {row[0] for row in conn.execute("SELECT id FROM cards;").fetchall()}

    # --- Collection Operations ---

    def load_collection(self) -> Collection:
        """Every stored deck, in display order, as one Collection."""
        decks = self._load_decks()
        created_at = min((d.created_at for d in decks), default=None) or utc_now()
        return Collection(created_at=created_at, decks=decks)

    def save_collection(self, collection: Collection) -> None:
        """Replace the whole store content with the collection."""
        self._require_writable("save collection")

        def work(cursor) -> None:
            cursor.execute("DELETE FROM reviews;")
            cursor.execute("DELETE FROM cards;")
            cursor.execute("DELETE FROM decks;")
            for position, deck in enumerate(collection.decks):
                self._write_deck(cursor, deck, position)

        self._run_in_transaction("save collection", work)
        logger.info(
            f"Saved collection: {len(collection.decks)} decks, "
            f"{collection.card_count} cards"
        )

    def merge_decks(
        self, decks: Iterable[Deck], match_by: str = MATCH_BY_ID
    ) -> MergeResult:
        """
        Add imported decks, skipping those already present.

        A deck is present when a stored deck has the same id (match_by="id",
        used for backups) or the same case-insensitive name (match_by="name",
        used for file imports). Imported cards whose ids are already taken get
        fresh ids so that card ids stay unique across the store.
        """
        if match_by not in (MATCH_BY_ID, MATCH_BY_NAME):
            raise ValueError(f"match_by must be 'id' or 'name', got {match_by!r}")
        self._require_writable("merge decks")

        existing = self.list_decks()
        existing_ids = {info.id for info in existing}
        existing_names = {info.name.lower() for info in existing}
        taken_card_ids = self._stored_card_ids()
        result = MergeResult()
        to_save: List[Deck] = []

        for deck in decks:
            present = (
                deck.id in existing_ids
                if match_by == MATCH_BY_ID
                else deck.name.lower() in existing_names
            )
            if present:
                logger.info(f"Skipping deck '{deck.name}': already in the store")
                result.skipped.append(deck.name)
                continue

            if deck.id in existing_ids:
                deck = deck.model_copy(update={"id": new_id()})
            renamed = 0
            cards: List[Card] = []
            for card in deck.cards:
                if card.id in taken_card_ids:
                    card = card.model_copy(update={"id": new_id()})
                    renamed += 1
                taken_card_ids.add(card.id)
                cards.append(card)
            if renamed:
                logger.warning(
                    f"Deck '{deck.name}': {renamed} cards got new ids to avoid collisions"
                )
                deck = deck.model_copy(update={"cards": cards})

            existing_ids.add(deck.id)
            existing_names.add(deck.name.lower())
            to_save.append(deck)
            result.imported.append((deck.name, len(deck.cards)))

        def work(cursor) -> None:
            for deck in to_save:
                self._write_deck(cursor, deck, self._deck_sort_order(cursor, deck.id))

        if to_save:
            self._run_in_transaction("merge decks", work)
        logger.info(
            f"Merged decks: {len(result.imported)} imported, "
            f"{len(result.skipped)} skipped"
        )
        return result

    # --- Statistics ---

    def get_database_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Aggregate counts for the whole store.

        Returns:
            dict with total_decks, total_cards, total_reviews, new_cards,
            due_cards and a per-deck list of {deck_id, deck_name, card_count,
            due_count, new_count}.
        """
        now_db = db_utils.to_db_timestamp(now or utc_now())
        conn = self.get_connection()
        sql = """
            SELECT
                d.id AS deck_id,
                d.name AS deck_name,
                COUNT(c.id) AS card_count,
                COUNT(CASE WHEN c.id IS NOT NULL AND (c.due_at IS NULL OR c.due_at <= $1)
                           THEN 1 END) AS due_count,
                COUNT(CASE WHEN c.repetitions = 0 AND NOT EXISTS
                               (SELECT 1 FROM reviews r WHERE r.card_id = c.id)
                           THEN 1 END) AS new_count
            FROM decks d LEFT JOIN cards c ON c.deck_id = d.id
            GROUP BY d.id, d.name, d.sort_order
            ORDER BY d.sort_order, d.name;
        """
        try:
            decks = _rows_to_dicts(conn.execute(sql, (now_db,)))
            review_row = conn.execute("SELECT COUNT(*) FROM reviews;").fetchone()
        except duckdb.Error as e:
            logger.error(f"Could not retrieve database stats due to an error: {e}")
            raise CardOperationError(
                "Could not retrieve database stats.", original_exception=e
            ) from e

        return {
            "total_decks": len(decks),
            "total_cards": sum(d["card_count"] for d in decks),
            "total_reviews": review_row[0] if review_row else 0,
            "new_cards": sum(d["new_count"] for d in decks),
            "due_cards": sum(d["due_count"] for d in decks),
            "decks": decks,
        }
