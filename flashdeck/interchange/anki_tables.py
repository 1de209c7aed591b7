"""
Flat in-memory tables for the relational snapshot inside an Anki package.

An Anki collection is an SQLite database (schema version 11 for legacy
packages). It is read once into the record tables below, indexed by id, and
everything else works against those tables; the canonical model is projected
from them on decode and they are built from it on encode.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..exceptions import CorruptDataError, FormatError

logger = logging.getLogger(__name__)

# Anki separates note fields with the ASCII unit separator.
FIELD_SEPARATOR = "\x1f"

SCHEMA_VERSION = 11

# cards.type
CARD_TYPE_NEW = 0
CARD_TYPE_LEARNING = 1
CARD_TYPE_REVIEW = 2
CARD_TYPE_RELEARNING = 3

# cards.queue
QUEUE_SUSPENDED = -1
QUEUE_SCHED_BURIED = -2
QUEUE_USER_BURIED = -3
QUEUE_NEW = 0
QUEUE_LEARNING = 1
QUEUE_REVIEW = 2
QUEUE_DAY_LEARNING = 3
QUEUE_PREVIEW = 4

# revlog.type
REVLOG_LEARN = 0
REVLOG_REVIEW = 1
REVLOG_RELEARN = 2

# fmt: off
ANKI_SCHEMA_SQL = """
CREATE TABLE col (
    id INTEGER PRIMARY KEY,
    crt INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    scm INTEGER NOT NULL,
    ver INTEGER NOT NULL,
    dty INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    ls INTEGER NOT NULL,
    conf TEXT NOT NULL,
    models TEXT NOT NULL,
    decks TEXT NOT NULL,
    dconf TEXT NOT NULL,
    tags TEXT NOT NULL
);
CREATE TABLE notes (
    id INTEGER PRIMARY KEY,
    guid TEXT NOT NULL,
    mid INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    tags TEXT NOT NULL,
    flds TEXT NOT NULL,
    sfld TEXT NOT NULL,
    csum INTEGER NOT NULL,
    flags INTEGER NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE cards (
    id INTEGER PRIMARY KEY,
    nid INTEGER NOT NULL,
    did INTEGER NOT NULL,
    ord INTEGER NOT NULL,
    mod INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    type INTEGER NOT NULL,
    queue INTEGER NOT NULL,
    due INTEGER NOT NULL,
    ivl INTEGER NOT NULL,
    factor INTEGER NOT NULL,
    reps INTEGER NOT NULL,
    lapses INTEGER NOT NULL,
    left INTEGER NOT NULL,
    odue INTEGER NOT NULL,
    odid INTEGER NOT NULL,
    flags INTEGER NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE revlog (
    id INTEGER PRIMARY KEY,
    cid INTEGER NOT NULL,
    usn INTEGER NOT NULL,
    ease INTEGER NOT NULL,
    ivl INTEGER NOT NULL,
    lastIvl INTEGER NOT NULL,
    factor INTEGER NOT NULL,
    time INTEGER NOT NULL,
    type INTEGER NOT NULL
);
CREATE TABLE graves (
    usn INTEGER NOT NULL,
    oid INTEGER NOT NULL,
    type INTEGER NOT NULL
);
CREATE INDEX ix_notes_usn ON notes (usn);
CREATE INDEX ix_cards_usn ON cards (usn);
CREATE INDEX ix_revlog_usn ON revlog (usn);
CREATE INDEX ix_cards_nid ON cards (nid);
CREATE INDEX ix_cards_sched ON cards (did, queue, due);
CREATE INDEX ix_revlog_cid ON revlog (cid);
CREATE INDEX ix_notes_csum ON notes (csum);
"""
# fmt: on


@dataclass
class AnkiCollectionMeta:
    crt: int
    mod: int
    scm: int
    ver: int
    conf: Dict[str, Any] = field(default_factory=dict)
    deck_configs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AnkiModel:
    id: int
    name: str
    field_names: List[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AnkiDeckRecord:
    id: int
    name: str
    description: str = ""
    is_filtered: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AnkiNote:
    id: int
    guid: str
    mid: int
    mod: int
    tags: List[str]
    fields: List[str]
    sort_field: str = ""
    checksum: int = 0


@dataclass
class AnkiCard:
    id: int
    nid: int
    did: int
    ord: int
    mod: int
    type: int
    queue: int
    due: int
    ivl: int
    factor: int
    reps: int
    lapses: int
    left: int = 0
    odue: int = 0
    odid: int = 0
    flags: int = 0
    data: str = ""


@dataclass
class AnkiRevlogEntry:
    id: int
    cid: int
    ease: int
    ivl: int
    last_ivl: int
    factor: int
    time: int = 0
    type: int = REVLOG_REVIEW


@dataclass
class AnkiTables:
    """Every record of one collection, keyed by id for join lookups."""

    meta: AnkiCollectionMeta
    models: Dict[int, AnkiModel] = field(default_factory=dict)
    decks: Dict[int, AnkiDeckRecord] = field(default_factory=dict)
    notes: Dict[int, AnkiNote] = field(default_factory=dict)
    cards: List[AnkiCard] = field(default_factory=list)
    revlog: Dict[int, List[AnkiRevlogEntry]] = field(default_factory=dict)

    def note_for(self, card: AnkiCard) -> Optional[AnkiNote]:
        return self.notes.get(card.nid)

    def revlog_for(self, card_id: int) -> List[AnkiRevlogEntry]:
        return self.revlog.get(card_id, [])

    def add_revlog(self, entry: AnkiRevlogEntry) -> None:
        self.revlog.setdefault(entry.cid, []).append(entry)


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _load_json(text: Optional[str], what: str) -> Dict[str, Any]:
    """Parse one of the JSON blobs stored in the col row."""
    if text is None or not text.strip():
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptDataError(
            f"Collection {what} is not valid JSON: {e}", original_exception=e
        ) from e
    if not isinstance(value, dict):
        raise CorruptDataError(f"Collection {what} must be a JSON object.")
    return value


def _required_int(row: sqlite3.Row, column: str, table: str, index: int) -> int:
    value = row[column]
    if value is None:
        raise CorruptDataError(
            f"{table}.{column} is missing.", record_index=index
        )
    return int(value)


def _optional_int(row: sqlite3.Row, column: str, default: int = 0) -> int:
    value = row[column]
    return int(value) if value is not None else default


def _read_meta(conn: sqlite3.Connection) -> AnkiCollectionMeta:
    row = conn.execute(
        "SELECT crt, mod, scm, ver, conf, dconf FROM col LIMIT 1"
    ).fetchone()
    if row is None:
        raise FormatError("Collection table 'col' is empty.")
    if row["crt"] is None:
        raise CorruptDataError("col.crt (collection creation time) is missing.")
    return AnkiCollectionMeta(
        crt=int(row["crt"]),
        mod=_optional_int(row, "mod"),
        scm=_optional_int(row, "scm"),
        ver=_optional_int(row, "ver", SCHEMA_VERSION),
        conf=_load_json(row["conf"], "configuration"),
        deck_configs=_load_json(row["dconf"], "deck configuration"),
    )


def _read_models(conn: sqlite3.Connection) -> Dict[int, AnkiModel]:
    row = conn.execute("SELECT models FROM col LIMIT 1").fetchone()
    raw_models = _load_json(row["models"], "note types")
    models: Dict[int, AnkiModel] = {}
    for key, raw in raw_models.items():
        try:
            model_id = int(key)
        except ValueError:
            logger.warning(f"Skipping note type with non-numeric id {key!r}")
            continue
        if not isinstance(raw, dict):
            raise CorruptDataError(f"Note type {key} is not a JSON object.")
        field_names = [
            f.get("name", "") for f in raw.get("flds", []) if isinstance(f, dict)
        ]
        models[model_id] = AnkiModel(
            id=model_id,
            name=str(raw.get("name", "")),
            field_names=field_names,
            raw=raw,
        )
    return models


def _has_table(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
    ).fetchone()
    return row is not None


def _read_decks(conn: sqlite3.Connection) -> Dict[int, AnkiDeckRecord]:
    row = conn.execute("SELECT decks FROM col LIMIT 1").fetchone()
    raw_decks = _load_json(row["decks"], "decks")
    decks: Dict[int, AnkiDeckRecord] = {}
    for key, raw in raw_decks.items():
        try:
            deck_id = int(key)
        except ValueError:
            logger.warning(f"Skipping deck with non-numeric id {key!r}")
            continue
        if not isinstance(raw, dict):
            raise CorruptDataError(f"Deck {key} is not a JSON object.")
        decks[deck_id] = AnkiDeckRecord(
            id=deck_id,
            name=str(raw.get("name") or f"Imported Deck {deck_id}"),
            description=str(raw.get("desc") or ""),
            is_filtered=bool(raw.get("dyn", 0)),
            raw=raw,
        )

    # Collections upgraded past schema 11 keep decks in their own table.
    if not decks and _has_table(conn, "decks"):
        for deck_row in conn.execute("SELECT id, name FROM decks"):
            deck_id = int(deck_row["id"])
            name = str(deck_row["name"] or "").replace(FIELD_SEPARATOR, "::")
            decks[deck_id] = AnkiDeckRecord(
                id=deck_id, name=name or f"Imported Deck {deck_id}"
            )
    return decks


def _read_notes(conn: sqlite3.Connection) -> Dict[int, AnkiNote]:
    notes: Dict[int, AnkiNote] = {}
    cursor = conn.execute(
        "SELECT id, guid, mid, mod, tags, flds, sfld, csum FROM notes ORDER BY id"
    )
    for index, row in enumerate(cursor):
        note_id = _required_int(row, "id", "notes", index)
        if row["flds"] is None:
            raise CorruptDataError(
                f"Note {note_id} has no field data.", record_index=index
            )
        notes[note_id] = AnkiNote(
            id=note_id,
            guid=str(row["guid"] or note_id),
            mid=_optional_int(row, "mid"),
            mod=_optional_int(row, "mod"),
            tags=(row["tags"] or "").split(),
            fields=str(row["flds"]).split(FIELD_SEPARATOR),
            sort_field=str(row["sfld"] or ""),
            checksum=_optional_int(row, "csum"),
        )
    return notes


def _read_cards(conn: sqlite3.Connection) -> List[AnkiCard]:
    cards: List[AnkiCard] = []
    cursor = conn.execute(
        "SELECT id, nid, did, ord, mod, type, queue, due, ivl, factor, reps, "
        "lapses, left, odue, odid, flags, data FROM cards ORDER BY id"
    )
    for index, row in enumerate(cursor):
        cards.append(
            AnkiCard(
                id=_required_int(row, "id", "cards", index),
                nid=_required_int(row, "nid", "cards", index),
                did=_optional_int(row, "did", 1),
                ord=_optional_int(row, "ord"),
                mod=_optional_int(row, "mod"),
                type=_optional_int(row, "type", CARD_TYPE_NEW),
                queue=_optional_int(row, "queue", QUEUE_NEW),
                due=_optional_int(row, "due"),
                ivl=_optional_int(row, "ivl"),
                factor=_optional_int(row, "factor"),
                reps=_optional_int(row, "reps"),
                lapses=_optional_int(row, "lapses"),
                left=_optional_int(row, "left"),
                odue=_optional_int(row, "odue"),
                odid=_optional_int(row, "odid"),
                flags=_optional_int(row, "flags"),
                data=str(row["data"] or ""),
            )
        )
    return cards


def _read_revlog(conn: sqlite3.Connection) -> Dict[int, List[AnkiRevlogEntry]]:
    revlog: Dict[int, List[AnkiRevlogEntry]] = {}
    cursor = conn.execute(
        "SELECT id, cid, ease, ivl, lastIvl, factor, time, type "
        "FROM revlog ORDER BY id"
    )
    for index, row in enumerate(cursor):
        entry = AnkiRevlogEntry(
            id=_required_int(row, "id", "revlog", index),
            cid=_required_int(row, "cid", "revlog", index),
            ease=_optional_int(row, "ease"),
            ivl=_optional_int(row, "ivl"),
            last_ivl=_optional_int(row, "lastIvl"),
            factor=_optional_int(row, "factor"),
            time=_optional_int(row, "time"),
            type=_optional_int(row, "type", REVLOG_REVIEW),
        )
        revlog.setdefault(entry.cid, []).append(entry)
    return revlog


def read_tables(conn: sqlite3.Connection) -> AnkiTables:
    """
    Load a whole collection database into AnkiTables.

    Raises:
        FormatError: If the database is not an Anki collection (not SQLite,
            or the expected tables are absent).
        CorruptDataError: If a record lacks a field that has no safe default.
    """
    conn.row_factory = sqlite3.Row
    try:
        tables = AnkiTables(
            meta=_read_meta(conn),
            models=_read_models(conn),
            decks=_read_decks(conn),
            notes=_read_notes(conn),
            cards=_read_cards(conn),
            revlog=_read_revlog(conn),
        )
    except sqlite3.DatabaseError as e:
        raise FormatError(
            f"Not a readable Anki collection: {e}", original_exception=e
        ) from e
    logger.debug(
        f"Read Anki snapshot: {len(tables.decks)} decks, {len(tables.notes)} "
        f"notes, {len(tables.cards)} cards, "
        f"{sum(len(v) for v in tables.revlog.values())} review log entries"
    )
    return tables


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def write_tables(conn: sqlite3.Connection, tables: AnkiTables) -> None:
    """Create the schema-11 tables in an empty database and fill them."""
    meta = tables.meta
    models_json = {str(m.id): m.raw for m in tables.models.values()}
    decks_json = {str(d.id): d.raw for d in tables.decks.values()}

    with conn:
        conn.executescript(ANKI_SCHEMA_SQL)
        conn.execute(
            "INSERT INTO col VALUES (1, ?, ?, ?, ?, 0, 0, 0, ?, ?, ?, ?, '{}')",
            (
                meta.crt,
                meta.mod,
                meta.scm,
                meta.ver,
                _dump(meta.conf),
                _dump(models_json),
                _dump(decks_json),
                _dump(meta.deck_configs),
            ),
        )
        conn.executemany(
            "INSERT INTO notes VALUES (?, ?, ?, ?, -1, ?, ?, ?, ?, 0, '')",
            [
                (
                    note.id,
                    note.guid,
                    note.mid,
                    note.mod,
                    f" {' '.join(note.tags)} " if note.tags else "",
                    FIELD_SEPARATOR.join(note.fields),
                    note.sort_field,
                    note.checksum,
                )
                for note in tables.notes.values()
            ],
        )
        conn.executemany(
            "INSERT INTO cards VALUES "
            "(?, ?, ?, ?, ?, -1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    c.id, c.nid, c.did, c.ord, c.mod, c.type, c.queue, c.due,
                    c.ivl, c.factor, c.reps, c.lapses, c.left, c.odue, c.odid,
                    c.flags, c.data,
                )
                for c in tables.cards
            ],
        )
        conn.executemany(
            "INSERT INTO revlog VALUES (?, ?, -1, ?, ?, ?, ?, ?, ?)",
            [
                (e.id, e.cid, e.ease, e.ivl, e.last_ivl, e.factor, e.time, e.type)
                for entries in tables.revlog.values()
                for e in entries
            ],
        )
