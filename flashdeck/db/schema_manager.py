import logging

import duckdb

from .. import config as flashdeck_config
from ..exceptions import DatabaseConnectionError, SchemaInitializationError
from . import schema
from .connection import ConnectionHandler

logger = logging.getLogger(__name__)


class SchemaManager:
    """Manages the database schema initialization and maintenance."""

    def __init__(self, handler: ConnectionHandler):
        self._handler = handler

    def initialize_schema(self, force_recreate_tables: bool = False) -> None:
        """
        Initializes the database schema using a transaction. Skips if in
        read-only mode unless it's an in-memory DB. Can force recreation of
        tables, which deletes all existing data.
        """
        if self._handle_read_only_initialization(force_recreate_tables):
            return

        conn = self._handler.get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.begin()
                if force_recreate_tables:
                    self._recreate_tables(cursor)
                cursor.execute(schema.DB_SCHEMA_SQL)
                cursor.commit()
            logger.info(
                f"Database schema at {self._handler.db_path_resolved} initialized "
                "successfully (or already exists)."
            )
        except duckdb.Error as e:
            logger.error(
                f"Error initializing database schema at {self._handler.db_path_resolved}: {e}"
            )
            raise SchemaInitializationError(
                f"Failed to initialize schema: {e}", original_exception=e
            ) from e

    def _handle_read_only_initialization(self, force_recreate_tables: bool) -> bool:
        """Returns True if initialization should be skipped (read-only file DB)."""
        if self._handler.read_only:
            if force_recreate_tables:
                raise DatabaseConnectionError(
                    "Cannot force_recreate_tables in read-only mode."
                )
            if not self._handler.is_memory:
                logger.warning("Attempting to initialize schema in read-only mode. Skipping.")
                return True
        return False

    def _perform_safety_check(self, cursor: duckdb.DuckDBPyConnection) -> None:
        """Refuses to drop tables that still hold cards or reviews."""
        if self._handler.is_memory or flashdeck_config.settings.testing_mode:
            return

        try:
            card_result = cursor.execute("SELECT COUNT(*) FROM cards").fetchone()
            review_result = cursor.execute("SELECT COUNT(*) FROM reviews").fetchone()
        except duckdb.CatalogException:
            # No tables yet, nothing to lose.
            return

        card_count = card_result[0] if card_result else 0
        review_count = review_result[0] if review_result else 0
        if card_count > 0 or review_count > 0:
            error_msg = (
                f"Refusing to drop tables with existing data (cards: {card_count}, "
                f"reviews: {review_count}). Export a backup first."
            )
            logger.error(error_msg)
            raise SchemaInitializationError(error_msg)

    def _recreate_tables(self, cursor: duckdb.DuckDBPyConnection) -> None:
        self._perform_safety_check(cursor)
        logger.warning(
            f"Forcing table recreation for {self._handler.db_path_resolved}. "
            "ALL EXISTING DATA WILL BE LOST."
        )
        for table in schema.TABLE_NAMES:
            cursor.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
