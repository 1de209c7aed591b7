import io
import json
import sqlite3
import zipfile
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from flashdeck.exceptions import CorruptDataError, FormatError
from flashdeck.interchange.anki_tables import (
    CARD_TYPE_NEW,
    CARD_TYPE_REVIEW,
    QUEUE_NEW,
    QUEUE_REVIEW,
    AnkiCard,
    AnkiCollectionMeta,
    AnkiDeckRecord,
    AnkiNote,
    AnkiRevlogEntry,
    AnkiTables,
    write_tables,
)
from flashdeck.interchange.apkg import (
    build_tables,
    decode_package,
    decode_tables,
    encode_field,
    encode_package,
    extract_media_refs,
    read_package,
    strip_html,
    write_package,
)
from flashdeck.models import Card, Collection, Deck, Rating
from flashdeck.scheduler import SM2Scheduler

UTC = timezone.utc
NOW = datetime(2024, 6, 1, 8, 0, 0, tzinfo=UTC)
CRT = datetime(2024, 1, 1, 4, 0, 0, tzinfo=UTC)
FOREIGN_DECK_ID = 1700000000000


def _sqlite_bytes(tmp_path: Path, tables: AnkiTables, name: str = "col.anki2") -> bytes:
    db_path = tmp_path / name
    with closing(sqlite3.connect(str(db_path))) as conn:
        write_tables(conn, tables)
    return db_path.read_bytes()


def _zip(members: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def _foreign_tables(
    deck_name: str = "Languages::French",
    cards: Optional[List[AnkiCard]] = None,
) -> AnkiTables:
    """A small collection shaped like one exported by Anki itself."""
    tables = AnkiTables(
        meta=AnkiCollectionMeta(
            crt=int(CRT.timestamp()), mod=0, scm=0, ver=11, conf={"schedVer": 2}
        )
    )
    tables.decks[FOREIGN_DECK_ID] = AnkiDeckRecord(
        id=FOREIGN_DECK_ID,
        name=deck_name,
        raw={"id": FOREIGN_DECK_ID, "name": deck_name, "desc": "From Anki", "dyn": 0},
    )
    tables.notes[1704067200000] = AnkiNote(
        id=1704067200000,
        guid="f:Gx8#q",
        mid=1,
        mod=0,
        tags=["vocab", "ch1"],
        fields=["le chat", "the cat<br><img src=\"cat.jpg\">[sound:chat.mp3]"],
    )
    tables.notes[1704067200001] = AnkiNote(
        id=1704067200001,
        guid="f:Hy9",
        mid=1,
        mod=0,
        tags=[],
        fields=["le chien", "the dog"],
    )
    tables.cards = cards if cards is not None else [
        AnkiCard(
            id=1704067300000,
            nid=1704067200000,
            did=FOREIGN_DECK_ID,
            ord=0,
            mod=0,
            type=CARD_TYPE_REVIEW,
            queue=QUEUE_REVIEW,
            due=10,
            ivl=15,
            factor=2350,
            reps=4,
            lapses=1,
        ),
        AnkiCard(
            id=1704067300001,
            nid=1704067200001,
            did=FOREIGN_DECK_ID,
            ord=0,
            mod=0,
            type=CARD_TYPE_NEW,
            queue=QUEUE_NEW,
            due=2,
            ivl=0,
            factor=0,
            reps=0,
            lapses=0,
        ),
    ]
    # A manual reschedule (ease 0) between two answers.
    tables.add_revlog(
        AnkiRevlogEntry(id=1704100000000, cid=1704067300000, ease=3, ivl=6, last_ivl=1, factor=2500)
    )
    tables.add_revlog(
        AnkiRevlogEntry(id=1704200000000, cid=1704067300000, ease=0, ivl=0, last_ivl=6, factor=0)
    )
    tables.add_revlog(
        AnkiRevlogEntry(id=1704300000000, cid=1704067300000, ease=2, ivl=15, last_ivl=6, factor=2350)
    )
    return tables


class TestFieldText:
    def test_strip_html_keeps_line_breaks(self):
        assert strip_html("one<br>two<br/>three") == "one\ntwo\nthree"
        assert strip_html("<div>a</div><div>b</div>") == "a\nb"

    def test_strip_html_drops_markup_and_media(self):
        raw = '<b>bold</b> &amp; <i>it</i><img src="x.png">[sound:y.mp3]&nbsp;'
        assert strip_html(raw) == "bold & it"

    def test_extract_media_refs_in_document_order(self):
        raw = '[sound:a.mp3]<img src="b.png"> and <IMG class=x src=c.jpg>'
        assert extract_media_refs(raw) == ["a.mp3", "b.png", "c.jpg"]

    def test_encode_field(self):
        assert encode_field("a < b\nc") == "a &lt; b<br>c"
        assert encode_field("x", ["s.ogg", "p.png"]) == 'x[sound:s.ogg]<img src="p.png">'


class TestRoundTrip:
    def test_collection_survives_encode_decode(self, sample_collection: Collection):
        data = encode_package(sample_collection, now=NOW)
        decoded = decode_package(data, now=NOW)

        assert decoded.model_dump() == sample_collection.model_dump()

    def test_deck_and_card_order_preserved(self, sample_collection: Collection):
        decoded = decode_package(encode_package(sample_collection, now=NOW))
        assert [d.name for d in decoded.decks] == ["French", "Spanish Verbs", "Empty Deck"]
        assert [c.id for c in decoded.decks[0].cards] == ["card-reviewed", "card-new"]

    def test_archive_layout(self, sample_collection: Collection):
        data = encode_package(sample_collection, now=NOW)
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            assert set(archive.namelist()) == {"collection.anki2", "media"}
            assert archive.read("media") == b"{}"

    def test_anki_tables_use_anki_units(self, sample_collection: Collection):
        tables = build_tables(sample_collection, now=NOW)
        by_guid = {note.id: note.guid for note in tables.notes.values()}
        cards = {by_guid[c.nid]: c for c in tables.cards}

        reviewed = cards["card-reviewed"]
        assert reviewed.factor == 2600
        assert reviewed.ivl == 3
        assert reviewed.type == CARD_TYPE_REVIEW
        assert cards["card-new"].type == CARD_TYPE_NEW
        assert [e.ease for e in tables.revlog_for(reviewed.id)] == [3, 4]

    def test_write_and_read_file(self, tmp_path: Path, sample_collection: Collection):
        path = write_package(tmp_path / "out.apkg", sample_collection, now=NOW)
        assert path.exists()
        assert read_package(path).model_dump() == sample_collection.model_dump()


class TestReviewedRoundTrip:
    """Packages written here decode back to the exact collection after real reviews."""

    # review times as utc_now() produces them, with microseconds
    REVIEWED_AT = datetime(2024, 6, 1, 9, 30, 0, 123456, tzinfo=UTC)

    @staticmethod
    def _review(deck: Deck, card_id: str, rating: Rating, at: datetime) -> None:
        output = SM2Scheduler().compute_next_state(
            card=deck.get_card(card_id), new_rating=rating, review_ts=at
        )
        deck.record_review(card_id, output.state, output.event)

    @staticmethod
    def _round_trip(collection: Collection) -> Collection:
        return decode_package(encode_package(collection, now=NOW), now=NOW)

    def test_review_history_is_exact(self):
        deck = Deck(id="deck-r", name="Reviewed", created_at=NOW)
        deck.add_card("q1", "a1")
        card_id = deck.cards[0].id
        self._review(deck, card_id, Rating.Good, self.REVIEWED_AT)
        self._review(deck, card_id, Rating.Hard, self.REVIEWED_AT + timedelta(days=1, microseconds=7))
        self._review(deck, card_id, Rating.Again, self.REVIEWED_AT + timedelta(days=3))
        collection = Collection(created_at=NOW, decks=[deck])

        decoded = self._round_trip(collection)

        assert decoded.model_dump() == collection.model_dump()
        history = decoded.decks[0].cards[0].review_history
        assert history[0].timestamp == self.REVIEWED_AT
        assert [e.rating for e in history] == [Rating.Good, Rating.Hard, Rating.Again]

    def test_cards_rated_at_the_same_instant(self):
        deck = Deck(id="deck-same", name="Same Instant", created_at=NOW)
        first = deck.add_card("q1", "a1")
        second = deck.add_card("q2", "a2")
        self._review(deck, first.id, Rating.Good, self.REVIEWED_AT)
        self._review(deck, second.id, Rating.Good, self.REVIEWED_AT)
        collection = Collection(created_at=NOW, decks=[deck])

        decoded = self._round_trip(collection)

        timestamps = [c.review_history[0].timestamp for c in decoded.decks[0].cards]
        assert timestamps == [self.REVIEWED_AT, self.REVIEWED_AT]
        assert decoded.model_dump() == collection.model_dump()

    def test_first_review_keeps_non_default_ease(self):
        deck = Deck(id="deck-ease", name="Hard Cards", created_at=NOW)
        deck.insert_card(Card(id="low-ease", front="q", back="a", ease_factor=2.0, created_at=NOW))
        self._review(deck, "low-ease", Rating.Good, self.REVIEWED_AT)
        collection = Collection(created_at=NOW, decks=[deck])

        decoded = self._round_trip(collection)

        event = decoded.decks[0].cards[0].review_history[0]
        assert event.ease_before == 2.0
        assert decoded.model_dump() == collection.model_dump()

    def test_text_whitespace_and_line_endings_survive(self):
        deck = Deck(id="deck-text", name="Text", created_at=NOW)
        deck.insert_card(Card(id="ws", front="  x", back="y\r\n", created_at=NOW))
        deck.insert_card(
            Card(id="multi", front="line one\r\nline two ", back="\tindented", created_at=NOW)
        )
        collection = Collection(created_at=NOW, decks=[deck])

        decoded = self._round_trip(collection)

        cards = decoded.decks[0].cards
        assert (cards[0].front, cards[0].back) == ("  x", "y\r\n")
        assert (cards[1].front, cards[1].back) == ("line one\r\nline two ", "\tindented")

    def test_notes_survive(self):
        deck = Deck(id="deck-notes", name="Notes", created_at=NOW)
        deck.add_card("q", "a", notes="irregular in the preterite")
        decoded = self._round_trip(Collection(created_at=NOW, decks=[deck]))
        assert decoded.decks[0].cards[0].notes == "irregular in the preterite"

    def test_field_edited_in_anki_wins_over_exported_text(self, tmp_path: Path):
        deck = Deck(id="deck-edit", name="Edited", created_at=NOW)
        deck.add_card("  old front", "back")
        tables = build_tables(Collection(created_at=NOW, decks=[deck]), now=NOW)
        note = next(iter(tables.notes.values()))
        note.fields[0] = "new <b>front</b>"

        data = _zip({"collection.anki2": _sqlite_bytes(tmp_path, tables)})
        card = decode_package(data, now=NOW).decks[0].cards[0]

        assert card.front == "new front"
        assert card.back == "back"

    def test_reviews_added_in_anki_use_the_review_log(self, tmp_path: Path):
        deck = Deck(id="deck-more", name="More Reviews", created_at=NOW)
        card_id = deck.add_card("q", "a").id
        self._review(deck, card_id, Rating.Good, self.REVIEWED_AT)
        tables = build_tables(Collection(created_at=NOW, decks=[deck]), now=NOW)
        anki_card = tables.cards[0]
        later = self.REVIEWED_AT + timedelta(days=2)
        tables.add_revlog(
            AnkiRevlogEntry(
                id=int(later.timestamp() * 1000),
                cid=anki_card.id,
                ease=3,
                ivl=3,
                last_ivl=1,
                factor=2500,
            )
        )

        data = _zip({"collection.anki2": _sqlite_bytes(tmp_path, tables)})
        history = decode_package(data, now=NOW).decks[0].cards[0].review_history

        assert len(history) == 2
        assert history[1].interval_after == 3
        # millisecond precision from the review log
        assert history[0].timestamp == datetime(2024, 6, 1, 9, 30, 0, 123000, tzinfo=UTC)


class TestForeignPackages:
    def test_decode_anki_written_collection(self, tmp_path: Path):
        data = _zip({"collection.anki2": _sqlite_bytes(tmp_path, _foreign_tables())})
        collection = decode_package(data, now=NOW)

        assert len(collection.decks) == 1
        deck = collection.decks[0]
        assert deck.name == "Languages::French"
        assert deck.description == "From Anki"
        assert deck.id == str(FOREIGN_DECK_ID)
        assert deck.created_at == CRT

        cat, dog = deck.cards
        assert cat.id == "f:Gx8#q"
        assert cat.front == "le chat"
        assert cat.back == "the cat"
        assert cat.media == ["cat.jpg", "chat.mp3"]
        assert cat.tags == {"vocab", "ch1"}
        assert cat.ease_factor == pytest.approx(2.35)
        assert cat.interval == 15
        assert cat.repetitions == 4
        assert cat.lapses == 1
        assert cat.due_at == CRT + timedelta(days=10)
        assert cat.created_at == datetime(2024, 1, 1, tzinfo=UTC)

        # the ease 0 entry is skipped; ease_before chains from the previous answer
        assert [e.rating for e in cat.review_history] == [Rating.Good, Rating.Hard]
        assert cat.review_history[1].ease_before == pytest.approx(2.5)
        assert cat.review_history[1].ease_after == pytest.approx(2.35)
        assert cat.last_reviewed == cat.review_history[-1].timestamp

        assert dog.is_new
        assert dog.due_at is None
        assert dog.ease_factor == pytest.approx(2.5)

    def test_ease_survives_reexport(self, tmp_path: Path):
        data = _zip({"collection.anki2": _sqlite_bytes(tmp_path, _foreign_tables())})
        collection = decode_package(data, now=NOW)
        tables = build_tables(collection, now=NOW)
        assert tables.cards[0].factor == 2350

    def test_prefers_anki21_member(self, tmp_path: Path):
        data = _zip(
            {
                "collection.anki2": _sqlite_bytes(
                    tmp_path, _foreign_tables("Old"), "old.anki2"
                ),
                "collection.anki21": _sqlite_bytes(
                    tmp_path, _foreign_tables("New"), "new.anki21"
                ),
            }
        )
        assert decode_tables(data).decks[FOREIGN_DECK_ID].name == "New"

    def test_card_without_note_is_corrupt(self, tmp_path: Path):
        orphan = AnkiCard(
            id=1, nid=999, did=FOREIGN_DECK_ID, ord=0, mod=0, type=0, queue=0,
            due=1, ivl=0, factor=0, reps=0, lapses=0,
        )
        data = _zip(
            {"collection.anki2": _sqlite_bytes(tmp_path, _foreign_tables(cards=[orphan]))}
        )
        with pytest.raises(CorruptDataError, match="missing note 999") as excinfo:
            decode_package(data)
        assert excinfo.value.record_index == 0


class TestBadInput:
    def test_not_a_zip(self):
        with pytest.raises(FormatError, match="zip archive expected"):
            decode_package(b"definitely not a zip file")

    def test_zip_without_collection(self):
        with pytest.raises(FormatError, match="No Anki database"):
            decode_package(_zip({"notes.txt": "hello"}))

    def test_compressed_only_collection(self):
        data = _zip({"collection.anki21b": b"\x28\xb5\x2f\xfd", "media": "{}"})
        with pytest.raises(FormatError, match="2.1.50"):
            decode_package(data)

    def test_collection_member_is_not_sqlite(self):
        with pytest.raises(FormatError):
            decode_package(_zip({"collection.anki2": b"garbage" * 100}))

    def test_read_package_error_names_file(self, tmp_path: Path):
        path = tmp_path / "broken.apkg"
        path.write_bytes(b"nope")
        with pytest.raises(FormatError) as excinfo:
            read_package(path)
        assert excinfo.value.source == path
        assert "broken.apkg" in str(excinfo.value)

    def test_invalid_conf_json_is_corrupt(self, tmp_path: Path):
        db_bytes = _sqlite_bytes(tmp_path, _foreign_tables())
        db_path = tmp_path / "patched.anki2"
        db_path.write_bytes(db_bytes)
        with closing(sqlite3.connect(str(db_path))) as conn:
            with conn:
                conn.execute("UPDATE col SET decks = ?", (json.dumps([1, 2]),))
        with pytest.raises(CorruptDataError, match="decks must be a JSON object"):
            decode_package(_zip({"collection.anki2": db_path.read_bytes()}))
