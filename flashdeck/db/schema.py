"""
Defines the database schema for flashdeck using a SQL string constant.
This keeps the schema definition separate from the database connection and
operation logic.

Timestamps are stored as naive TIMESTAMP values in UTC; the marshalling layer
attaches the UTC zone on the way out. Row order within a deck is kept in
sort_order columns since the model's card lists are ordered.
"""

DB_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS decks (
        id VARCHAR NOT NULL,
        name VARCHAR NOT NULL,
        description VARCHAR NOT NULL DEFAULT '',
        created_at TIMESTAMP NOT NULL,
        last_studied TIMESTAMP,
        sort_order INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS cards (
        id VARCHAR NOT NULL,
        deck_id VARCHAR NOT NULL,
        sort_order INTEGER NOT NULL,
        front VARCHAR NOT NULL,
        back VARCHAR NOT NULL,
        tags VARCHAR[],
        notes VARCHAR NOT NULL DEFAULT '',
        ease_factor DOUBLE NOT NULL,
        interval_days INTEGER NOT NULL CHECK (interval_days >= 0),
        repetitions INTEGER NOT NULL CHECK (repetitions >= 0),
        lapses INTEGER NOT NULL CHECK (lapses >= 0),
        due_at TIMESTAMP,
        last_reviewed TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        media VARCHAR[]
    );

    CREATE TABLE IF NOT EXISTS reviews (
        card_id VARCHAR NOT NULL,
        seq INTEGER NOT NULL,
        ts TIMESTAMP NOT NULL,
        rating INTEGER NOT NULL CHECK (rating >= 1 AND rating <= 4),
        interval_before INTEGER NOT NULL,
        interval_after INTEGER NOT NULL,
        ease_before DOUBLE NOT NULL,
        ease_after DOUBLE NOT NULL
    );
"""

TABLE_NAMES = ("reviews", "cards", "decks")
