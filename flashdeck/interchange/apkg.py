"""
Anki package (.apkg) import and export.

A package is a zip archive holding a collection database
(``collection.anki21`` or ``collection.anki2``) and a ``media`` manifest.
Decoding reads the database into AnkiTables and projects decks and cards into
the canonical model; encoding builds AnkiTables from a Collection and writes a
schema-11 collection that Anki can import.

Scheduling values are converted between units on the way through: Anki
stores the ease factor in permille and intraday intervals as negative
seconds, while the canonical model uses a plain multiplier and whole days.
Values Anki has no column for (exact due and review timestamps, ids,
creation times, unformatted card text and notes) travel in a ``flashdeck``
extension block inside the JSON blobs Anki keeps as-is, so that packages
written here decode back to the same collection.
"""

import hashlib
import html
import io
import json
import logging
import re
import sqlite3
import tempfile
import zipfile
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import bleach
from pydantic import ValidationError

from ..constants import BACKUP_FORMAT_VERSION, DEFAULT_EASE_FACTOR, RELEARN_DELAY
from ..exceptions import CorruptDataError, FormatError, InterchangeError
from ..models import (
    Card,
    Collection,
    Deck,
    Rating,
    ReviewEvent,
    clamp_ease,
    ensure_utc,
    utc_now,
)
from .anki_tables import (
    CARD_TYPE_LEARNING,
    CARD_TYPE_NEW,
    CARD_TYPE_RELEARNING,
    CARD_TYPE_REVIEW,
    QUEUE_DAY_LEARNING,
    QUEUE_LEARNING,
    QUEUE_NEW,
    QUEUE_REVIEW,
    REVLOG_LEARN,
    REVLOG_RELEARN,
    REVLOG_REVIEW,
    SCHEMA_VERSION,
    AnkiCard,
    AnkiCollectionMeta,
    AnkiDeckRecord,
    AnkiModel,
    AnkiNote,
    AnkiRevlogEntry,
    AnkiTables,
    read_tables,
    write_tables,
)
from .atomic import write_bytes_atomic

logger = logging.getLogger(__name__)

# Archive members, newest first. anki21b is zstd-compressed (Anki 2.1.50+).
COLLECTION_MEMBERS = ("collection.anki21", "collection.anki2")
COMPRESSED_COLLECTION_MEMBER = "collection.anki21b"
MEDIA_MEMBER = "media"

EXTENSION_KEY = "flashdeck"
DEFAULT_DECK_ID = 1
DEFAULT_DECK_CONFIG_ID = 1
BASIC_MODEL_ID = 1342697561419

# due values above this are epoch seconds (intraday learning), below are days.
EPOCH_DUE_THRESHOLD = 1_000_000_000

AUDIO_VIDEO_EXTENSIONS = {
    "3gp", "aac", "flac", "m4a", "mkv", "mov", "mp3", "mp4", "mpeg", "oga",
    "ogg", "ogv", "opus", "spx", "wav", "webm",
}

_IMG_SRC_RE = re.compile(r"""<img[^>]*?\bsrc\s*=\s*["']?([^"'>\s]+)["']?[^>]*>""", re.IGNORECASE)
_SOUND_RE = re.compile(r"\[sound:([^\]]+)\]")
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_DIV_BREAK_RE = re.compile(r"</div>\s*<div[^>]*>", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Field text
# ---------------------------------------------------------------------------


def extract_media_refs(field_html: str) -> List[str]:
    """Media file names referenced by a note field, in document order."""
    found: List[Tuple[int, str]] = []
    for match in _IMG_SRC_RE.finditer(field_html):
        found.append((match.start(), html.unescape(match.group(1))))
    for match in _SOUND_RE.finditer(field_html):
        found.append((match.start(), match.group(1)))
    return [name for _, name in sorted(found)]


def strip_html(field_html: str) -> str:
    """Plain text of a note field: line breaks kept, markup and media dropped."""
    text = _SOUND_RE.sub("", field_html)
    text = _BR_RE.sub("\n", text)
    text = _DIV_BREAK_RE.sub("\n", text)
    text = bleach.clean(text, tags=set(), strip=True, strip_comments=True)
    return html.unescape(text).replace("\xa0", " ").strip()


def _media_tag(name: str) -> str:
    extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    if extension in AUDIO_VIDEO_EXTENSIONS:
        return f"[sound:{name}]"
    return f'<img src="{html.escape(name, quote=True)}">'


def encode_field(text: str, media: Optional[List[str]] = None) -> str:
    """HTML for a note field: escaped text, <br> line breaks, media tags."""
    encoded = html.escape(text, quote=False).replace("\r\n", "\n").replace("\n", "<br>")
    if media:
        encoded += "".join(_media_tag(name) for name in media)
    return encoded


def field_checksum(field_html: str) -> int:
    """Anki's duplicate-check checksum: first 8 hex digits of SHA-1."""
    digest = hashlib.sha1(strip_html(field_html).encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


# ---------------------------------------------------------------------------
# Extension blocks and timestamps
# ---------------------------------------------------------------------------


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ensure_utc(ts).isoformat() if ts is not None else None


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        logger.warning(f"Ignoring unreadable timestamp {value!r} in extension block")
        return None


def _extension(raw: Dict[str, Any]) -> Dict[str, Any]:
    block = raw.get(EXTENSION_KEY)
    return block if isinstance(block, dict) else {}


def _card_extension(card: AnkiCard) -> Dict[str, Any]:
    if not card.data:
        return {}
    try:
        data = json.loads(card.data)
    except json.JSONDecodeError:
        return {}
    return _extension(data) if isinstance(data, dict) else {}


def _from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _to_epoch_ms(ts: datetime) -> int:
    return int(round(ensure_utc(ts).timestamp() * 1000))


def _day_start(ts: datetime) -> datetime:
    ts = ensure_utc(ts)
    return datetime(ts.year, ts.month, ts.day, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def _due_from_anki(card: AnkiCard, crt: datetime) -> Optional[datetime]:
    """Convert Anki's queue-dependent due value to a timestamp."""
    if card.type == CARD_TYPE_NEW or card.queue == QUEUE_NEW:
        return None
    due = card.odue if card.odid and card.odue else card.due
    if card.queue not in (QUEUE_LEARNING, QUEUE_REVIEW, QUEUE_DAY_LEARNING):
        logger.debug(
            f"Card {card.id} is in unsupported queue {card.queue}; "
            "importing its scheduling with best-effort defaults"
        )
    if due >= EPOCH_DUE_THRESHOLD:
        return datetime.fromtimestamp(due, tz=timezone.utc)
    return crt + timedelta(days=due)


def _events_from_revlog(entries: List[AnkiRevlogEntry]) -> List[ReviewEvent]:
    events: List[ReviewEvent] = []
    ease_before = DEFAULT_EASE_FACTOR
    for entry in entries:
        if entry.ease not in (1, 2, 3, 4):
            # ease 0 marks manual reschedules, which are not answers.
            logger.debug(f"Skipping review log entry {entry.id} with ease {entry.ease}")
            continue
        ease_after = clamp_ease(entry.factor / 1000) if entry.factor > 0 else ease_before
        events.append(
            ReviewEvent(
                timestamp=_from_epoch_ms(entry.id),
                rating=Rating(entry.ease),
                interval_before=max(0, entry.last_ivl),
                interval_after=max(0, entry.ivl),
                ease_before=ease_before,
                ease_after=ease_after,
            )
        )
        ease_before = ease_after
    return events


def _history_from_extension(
    ext: Dict[str, Any], revlog_events: List[ReviewEvent]
) -> List[ReviewEvent]:
    """
    The exact review events stored at export, while they still match the
    revlog. Reviews done in Anki after the export make the revlog longer; the
    revlog then wins.
    """
    stored = ext.get("history")
    if not isinstance(stored, list):
        return revlog_events
    if len(stored) != len(revlog_events):
        logger.debug(
            f"Review log has {len(revlog_events)} entries, extension block "
            f"{len(stored)}; using the review log"
        )
        return revlog_events
    return [ReviewEvent.model_validate(item) for item in stored]


def _field_text(field_html: str, raw: Any) -> str:
    """Plain text of a field, or the exported text when the field is unchanged."""
    text = strip_html(field_html)
    if isinstance(raw, str) and strip_html(encode_field(raw)) == text:
        return raw
    return text


def _card_from_records(
    tables: AnkiTables, card: AnkiCard, note: AnkiNote, crt: datetime
) -> Card:
    fields = note.fields
    front_html = fields[0] if fields else ""
    back_html = fields[1] if len(fields) > 1 else ""
    ext = _card_extension(card)
    history = _history_from_extension(ext, _events_from_revlog(tables.revlog_for(card.id)))
    notes = ext.get("notes")

    if card.type == CARD_TYPE_NEW:
        interval = 0
        repetitions = 0
    else:
        # negative intervals are seconds: due within the day
        interval = max(0, card.ivl)
        repetitions = max(0, card.reps)
    ease = card.factor / 1000 if card.factor > 0 else DEFAULT_EASE_FACTOR
    stored_ease = ext.get("ease_factor")
    # the permille column wins once Anki has rescheduled the card
    if isinstance(stored_ease, (int, float)) and int(round(stored_ease * 1000)) == card.factor:
        ease = float(stored_ease)

    if "due_at" in ext:
        due_at = _parse_iso(ext["due_at"])
    else:
        due_at = _due_from_anki(card, crt)
    last_reviewed = _parse_iso(ext.get("last_reviewed")) or (
        history[-1].timestamp if history else None
    )
    created_at = _parse_iso(ext.get("created_at")) or _from_epoch_ms(note.id)

    card_id = note.guid if card.ord == 0 else f"{note.guid}-{card.ord}"
    return Card(
        id=card_id,
        front=_field_text(front_html, ext.get("front")),
        back=_field_text(back_html, ext.get("back")),
        tags=set(note.tags),
        notes=notes if isinstance(notes, str) else "",
        ease_factor=ease,
        interval=interval,
        repetitions=repetitions,
        lapses=max(0, card.lapses),
        due_at=due_at,
        last_reviewed=last_reviewed,
        created_at=created_at,
        media=extract_media_refs(front_html) + extract_media_refs(back_html),
        review_history=tuple(history),
    )


def _deck_from_record(
    did: int, record: Optional[AnkiDeckRecord], crt: datetime
) -> Deck:
    if record is None:
        return Deck(id=str(did), name=f"Imported Deck {did}", created_at=crt)
    ext = _extension(record.raw)
    deck = Deck(
        id=str(ext.get("id") or did),
        name=record.name,
        description=record.description,
        created_at=crt,
    )
    created_at = _parse_iso(ext.get("created_at"))
    if created_at is not None:
        deck.created_at = created_at
    deck.last_studied = _parse_iso(ext.get("last_studied"))
    return deck


def project_collection(tables: AnkiTables, now: Optional[datetime] = None) -> Collection:
    """Build the canonical Collection from decoded AnkiTables."""
    now = ensure_utc(now or utc_now())
    crt = datetime.fromtimestamp(tables.meta.crt, tz=timezone.utc)
    decks: Dict[int, Deck] = {}

    for index, anki_card in enumerate(tables.cards):
        note = tables.note_for(anki_card)
        if note is None:
            raise CorruptDataError(
                f"Card {anki_card.id} references missing note {anki_card.nid}.",
                record_index=index,
            )
        # Cards borrowed by a filtered deck belong to their home deck.
        did = anki_card.odid or anki_card.did
        if did not in decks:
            decks[did] = _deck_from_record(did, tables.decks.get(did), crt)
        try:
            card = _card_from_records(tables, anki_card, note, crt)
            decks[did].insert_card(card)
        except (ValidationError, ValueError) as e:
            raise CorruptDataError(
                f"Card {anki_card.id} cannot be imported: {e}",
                record_index=index,
                original_exception=e,
            ) from e

    # Empty decks are kept only when they were written by this codec.
    for did, record in tables.decks.items():
        if did not in decks and _extension(record.raw):
            decks[did] = _deck_from_record(did, record, crt)

    def order_key(item: Tuple[int, Deck]) -> Tuple[int, int, str]:
        did, deck = item
        record = tables.decks.get(did)
        position = _extension(record.raw).get("position") if record else None
        if isinstance(position, int):
            return (0, position, "")
        return (1, 0, deck.name.lower())

    ordered = [deck for _, deck in sorted(decks.items(), key=order_key)]

    ext = _extension(tables.meta.conf)
    created_at = _parse_iso(ext.get("created_at")) or crt
    try:
        return Collection(
            version=BACKUP_FORMAT_VERSION, created_at=created_at, decks=ordered
        )
    except ValidationError as e:
        raise CorruptDataError(
            f"Package contents are inconsistent: {e}", original_exception=e
        ) from e


def _open_archive(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as e:
        raise FormatError(
            f"Not an Anki package (zip archive expected): {e}", original_exception=e
        ) from e


def _collection_member(archive: zipfile.ZipFile) -> str:
    names = set(archive.namelist())
    for member in COLLECTION_MEMBERS:
        if member in names:
            if member == "collection.anki2" and COMPRESSED_COLLECTION_MEMBER in names:
                # Newer exports ship a placeholder anki2 next to the real data.
                break
            return member
    if COMPRESSED_COLLECTION_MEMBER in names:
        raise FormatError(
            "Package uses the compressed collection format of Anki 2.1.50+; "
            "re-export it from Anki with 'Support older Anki versions' enabled."
        )
    raise FormatError(
        "No Anki database found in package "
        "(expected collection.anki21 or collection.anki2)."
    )


def _media_manifest_size(archive: zipfile.ZipFile) -> int:
    if MEDIA_MEMBER not in archive.namelist():
        return 0
    try:
        manifest = json.loads(archive.read(MEDIA_MEMBER) or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return 0
    return len(manifest) if isinstance(manifest, dict) else 0


def decode_tables(data: bytes) -> AnkiTables:
    """Open a package and load its collection database into AnkiTables."""
    with _open_archive(data) as archive:
        member = _collection_member(archive)
        try:
            db_bytes = archive.read(member)
        except (zipfile.BadZipFile, OSError, RuntimeError) as e:
            raise FormatError(
                f"Failed to extract {member} from package: {e}", original_exception=e
            ) from e
        media_count = _media_manifest_size(archive)

    if media_count:
        logger.info(
            f"Package carries {media_count} media files; "
            "references are kept, file contents are not imported"
        )

    with tempfile.TemporaryDirectory(prefix="flashdeck-apkg-") as tmp:
        db_path = Path(tmp) / "collection.db"
        db_path.write_bytes(db_bytes)
        with closing(sqlite3.connect(str(db_path))) as conn:
            return read_tables(conn)


def decode_package(data: bytes, now: Optional[datetime] = None) -> Collection:
    """
    Decode an Anki package into a Collection.

    Raises:
        FormatError: If the archive cannot be opened or holds no collection.
        CorruptDataError: If a record misses a field that has no safe default.
    """
    tables = decode_tables(data)
    collection = project_collection(tables, now=now)
    logger.info(
        f"Decoded Anki package: {len(collection.decks)} decks, "
        f"{collection.card_count} cards"
    )
    return collection


def read_package(path: Union[str, Path], now: Optional[datetime] = None) -> Collection:
    """Read and decode an .apkg file; errors carry the file path."""
    path = Path(path)
    data = path.read_bytes()
    try:
        return decode_package(data, now=now)
    except InterchangeError as e:
        raise e.with_source(path)


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


class _IdAllocator:
    """Hands out unique integer ids, preferring the requested value."""

    def __init__(self) -> None:
        self._used: Set[int] = set()

    def allocate(self, preferred: int) -> int:
        value = preferred
        while value in self._used:
            value += 1
        self._used.add(value)
        return value


def _basic_model(now_s: int) -> AnkiModel:
    field_names = ["Front", "Back"]
    raw = {
        "id": BASIC_MODEL_ID,
        "name": "Basic",
        "type": 0,
        "mod": now_s,
        "usn": -1,
        "sortf": 0,
        "did": DEFAULT_DECK_ID,
        "tags": [],
        "vers": [],
        "tmpls": [
            {
                "name": "Card 1",
                "ord": 0,
                "qfmt": "{{Front}}",
                "afmt": "{{FrontSide}}\n\n<hr id=answer>\n\n{{Back}}",
                "did": None,
                "bqfmt": "",
                "bafmt": "",
            }
        ],
        "flds": [
            {
                "name": name,
                "ord": i,
                "sticky": False,
                "rtl": False,
                "font": "Arial",
                "size": 20,
                "media": [],
            }
            for i, name in enumerate(field_names)
        ],
        "css": ".card {\n font-family: arial;\n font-size: 20px;\n"
        " text-align: center;\n color: black;\n background-color: white;\n}\n",
        "latexPre": "\\documentclass[12pt]{article}\n\\special{papersize=3in,5in}\n"
        "\\usepackage[utf8]{inputenc}\n\\usepackage{amssymb,amsmath}\n"
        "\\pagestyle{empty}\n\\setlength{\\parindent}{0in}\n\\begin{document}\n",
        "latexPost": "\\end{document}",
        "latexsvg": False,
        "req": [[0, "any", [0]]],
    }
    return AnkiModel(id=BASIC_MODEL_ID, name="Basic", field_names=field_names, raw=raw)


def _deck_json(
    deck_id: int, name: str, description: str, now_s: int, ext: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    raw: Dict[str, Any] = {
        "id": deck_id,
        "name": name,
        "desc": description,
        "mod": now_s,
        "usn": -1,
        "lrnToday": [0, 0],
        "revToday": [0, 0],
        "newToday": [0, 0],
        "timeToday": [0, 0],
        "collapsed": False,
        "browserCollapsed": False,
        "dyn": 0,
        "conf": DEFAULT_DECK_CONFIG_ID,
        "extendNew": 10,
        "extendRev": 50,
    }
    if ext:
        raw[EXTENSION_KEY] = ext
    return raw


def _deck_config_json() -> Dict[str, Any]:
    return {
        str(DEFAULT_DECK_CONFIG_ID): {
            "id": DEFAULT_DECK_CONFIG_ID,
            "name": "Default",
            "replayq": True,
            "lapse": {
                "leechFails": 8,
                "minInt": 1,
                "delays": [RELEARN_DELAY.total_seconds() / 60],
                "leechAction": 1,
                "mult": 0,
            },
            "rev": {
                "perDay": 200,
                "fuzz": 0.05,
                "ivlFct": 1,
                "maxIvl": 36500,
                "ease4": 1.3,
                "bury": False,
                "hardFactor": 1.2,
            },
            "new": {
                "perDay": 20,
                "delays": [1, 10],
                "separate": True,
                "ints": [1, 4, 0],
                "initialFactor": int(DEFAULT_EASE_FACTOR * 1000),
                "bury": False,
                "order": 1,
            },
            "maxTaken": 60,
            "timer": 0,
            "autoplay": True,
            "dyn": False,
            "mod": 0,
            "usn": 0,
        }
    }


def _schedule_columns(
    card: Card, position: int, crt: datetime, now: datetime
) -> Tuple[int, int, int, int]:
    """(type, queue, due, left) for a canonical card."""
    if card.is_new and card.interval == 0:
        return CARD_TYPE_NEW, QUEUE_NEW, position, 0
    due_at = card.due_at or now
    if card.interval == 0:
        card_type = CARD_TYPE_RELEARNING if card.lapses else CARD_TYPE_LEARNING
        return card_type, QUEUE_LEARNING, int(ensure_utc(due_at).timestamp()), 1001
    due_day = (_day_start(due_at) - crt).days
    return CARD_TYPE_REVIEW, QUEUE_REVIEW, due_day, 0


def _revlog_entries(
    card: Card, card_id: int, ids: _IdAllocator
) -> List[AnkiRevlogEntry]:
    relearn_seconds = int(RELEARN_DELAY.total_seconds())
    entries: List[AnkiRevlogEntry] = []
    for event in card.review_history:
        if event.interval_before > 0:
            log_type = REVLOG_REVIEW
        elif entries:
            log_type = REVLOG_RELEARN
        else:
            log_type = REVLOG_LEARN
        entries.append(
            AnkiRevlogEntry(
                id=ids.allocate(_to_epoch_ms(event.timestamp)),
                cid=card_id,
                ease=int(event.rating),
                ivl=event.interval_after if event.interval_after > 0 else -relearn_seconds,
                last_ivl=event.interval_before,
                factor=int(round(event.ease_after * 1000)),
                time=0,
                type=log_type,
            )
        )
    return entries


def build_tables(collection: Collection, now: Optional[datetime] = None) -> AnkiTables:
    """Synthesize the Anki record tables for a Collection."""
    now = ensure_utc(now or utc_now())
    now_s = int(now.timestamp())
    now_ms = _to_epoch_ms(now)

    # Day numbers are counted from crt; start it early enough that no review
    # card gets a negative due day.
    crt = _day_start(collection.created_at)
    for _, card in collection.iter_cards():
        if card.interval > 0 and card.due_at is not None:
            crt = min(crt, _day_start(card.due_at))

    model = _basic_model(now_s)
    conf = {
        "nextPos": collection.card_count + 1,
        "estTimes": True,
        "activeDecks": [DEFAULT_DECK_ID],
        "sortType": "noteFld",
        "timeLim": 0,
        "sortBackwards": False,
        "addToCur": True,
        "curDeck": DEFAULT_DECK_ID,
        "newBury": True,
        "newSpread": 0,
        "dueCounts": True,
        "curModel": str(model.id),
        "collapseTime": 1200,
        "schedVer": 2,
        EXTENSION_KEY: {
            "version": collection.version,
            "created_at": _iso(collection.created_at),
        },
    }
    tables = AnkiTables(
        meta=AnkiCollectionMeta(
            crt=int(crt.timestamp()),
            mod=now_ms,
            scm=now_ms,
            ver=SCHEMA_VERSION,
            conf=conf,
            deck_configs=_deck_config_json(),
        ),
        models={model.id: model},
    )
    tables.decks[DEFAULT_DECK_ID] = AnkiDeckRecord(
        id=DEFAULT_DECK_ID,
        name="Default",
        raw=_deck_json(DEFAULT_DECK_ID, "Default", "", now_s),
    )

    note_ids = _IdAllocator()
    revlog_ids = _IdAllocator()
    position = 0
    for deck_index, deck in enumerate(collection.decks):
        deck_id = now_ms + deck_index + 1
        ext = {
            "id": deck.id,
            "position": deck_index,
            "created_at": _iso(deck.created_at),
            "last_studied": _iso(deck.last_studied),
        }
        tables.decks[deck_id] = AnkiDeckRecord(
            id=deck_id,
            name=deck.name,
            description=deck.description,
            raw=_deck_json(deck_id, deck.name, deck.description, now_s, ext),
        )

        for card in deck.cards:
            position += 1
            note_id = note_ids.allocate(_to_epoch_ms(card.created_at))
            # Card ids follow collection order so decoding keeps it.
            card_id = now_ms + position
            front_html = encode_field(card.front)
            back_html = encode_field(card.back, card.media)
            tables.notes[note_id] = AnkiNote(
                id=note_id,
                guid=card.id,
                mid=model.id,
                mod=now_s,
                tags=sorted(card.tags),
                fields=[front_html, back_html],
                sort_field=strip_html(front_html),
                checksum=field_checksum(front_html),
            )
            card_type, queue, due, left = _schedule_columns(card, position, crt, now)
            card_ext = {
                "ease_factor": card.ease_factor,
                "due_at": _iso(card.due_at),
                "last_reviewed": _iso(card.last_reviewed),
                "created_at": _iso(card.created_at),
                "front": card.front,
                "back": card.back,
                "notes": card.notes,
                # revlog ids are unique milliseconds, so exact times live here
                "history": [e.model_dump(mode="json") for e in card.review_history],
            }
            tables.cards.append(
                AnkiCard(
                    id=card_id,
                    nid=note_id,
                    did=deck_id,
                    ord=0,
                    mod=now_s,
                    type=card_type,
                    queue=queue,
                    due=due,
                    ivl=card.interval,
                    factor=int(round(card.ease_factor * 1000)),
                    reps=card.repetitions,
                    lapses=card.lapses,
                    left=left,
                    data=json.dumps({EXTENSION_KEY: card_ext}, separators=(",", ":")),
                )
            )
            for entry in _revlog_entries(card, card_id, revlog_ids):
                tables.add_revlog(entry)
    return tables


def encode_package(collection: Collection, now: Optional[datetime] = None) -> bytes:
    """Encode a Collection as .apkg bytes (text-only, empty media manifest)."""
    tables = build_tables(collection, now=now)
    with tempfile.TemporaryDirectory(prefix="flashdeck-apkg-") as tmp:
        db_path = Path(tmp) / "collection.anki2"
        with closing(sqlite3.connect(str(db_path))) as conn:
            write_tables(conn, tables)
        db_bytes = db_path.read_bytes()

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("collection.anki2", db_bytes)
        archive.writestr(MEDIA_MEMBER, "{}")
    logger.info(
        f"Encoded Anki package: {len(collection.decks)} decks, "
        f"{collection.card_count} cards"
    )
    return buffer.getvalue()


def write_package(
    path: Union[str, Path], collection: Collection, now: Optional[datetime] = None
) -> Path:
    """Encode and write an .apkg file; the target is replaced only on success."""
    data = encode_package(collection, now=now)
    return write_bytes_atomic(Path(path), data)
