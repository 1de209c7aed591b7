# Standard library imports
import json
import re
from pathlib import Path
from unittest.mock import patch

# Third-party imports
import pytest
from typer.testing import CliRunner

# Local application imports
from flashdeck.cli.main import app
from flashdeck.db.database import DeckDatabase
from flashdeck.interchange import write_backup, write_package
from flashdeck.models import Collection

runner = CliRunner()


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences (color and control codes) from text."""
    ansi_escape = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
    return ansi_escape.sub("", text)


def normalize_output(text: str) -> str:
    """Strip ANSI codes and collapse all whitespace to single spaces."""
    text = strip_ansi(text)
    return re.sub(r"\s+", " ", text).strip()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "decks.db"


@pytest.fixture
def populated_db(db_path: Path, sample_collection: Collection) -> Path:
    """A database file holding the sample collection."""
    with DeckDatabase(db_path) as db:
        db.save_collection(sample_collection)
    return db_path


def invoke(*args, input=None):
    return runner.invoke(app, [str(a) for a in args], input=input)


# --- deck ---


def test_deck_create_and_list(db_path: Path):
    result = invoke("deck", "create", "French", "--description", "Phrases", "--db", db_path)
    assert result.exit_code == 0, result.output
    assert "Created deck French" in normalize_output(result.output)

    result = invoke("deck", "list", "--db", db_path)
    assert result.exit_code == 0
    output = normalize_output(result.output)
    assert "French" in output
    assert "Phrases" in output


def test_deck_create_duplicate_name(db_path: Path):
    invoke("deck", "create", "French", "--db", db_path)
    result = invoke("deck", "create", "french", "--db", db_path)
    assert result.exit_code == 1
    assert "already exists" in normalize_output(result.output)


def test_deck_list_empty(db_path: Path):
    result = invoke("deck", "list", "--db", db_path)
    assert result.exit_code == 0
    assert "No decks found." in result.output


def test_deck_show(populated_db: Path):
    result = invoke("deck", "show", "French", "--db", populated_db)
    assert result.exit_code == 0, result.output
    output = normalize_output(result.output)
    assert "Everyday phrases" in output
    assert "Total: 2 New: 1" in output
    assert "Bonjour" in output


def test_deck_show_unknown(populated_db: Path):
    result = invoke("deck", "show", "German", "--db", populated_db)
    assert result.exit_code == 1
    assert "Deck 'German' not found." in normalize_output(result.output)


def test_deck_delete_with_confirmation(populated_db: Path):
    result = invoke("deck", "delete", "Spanish Verbs", "--db", populated_db, input="n\n")
    assert result.exit_code == 0
    assert "Delete cancelled." in result.output

    result = invoke("deck", "delete", "Spanish Verbs", "--db", populated_db, input="y\n")
    assert result.exit_code == 0
    with DeckDatabase(populated_db) as db:
        assert [i.name for i in db.list_decks()] == ["French", "Empty Deck"]


def test_deck_delete_yes_flag(populated_db: Path):
    result = invoke("deck", "delete", "deck-empty", "--yes", "--db", populated_db)
    assert result.exit_code == 0
    assert "Deleted deck Empty Deck" in normalize_output(result.output)


# --- card ---


def test_card_add_edit_delete(populated_db: Path):
    result = invoke(
        "card", "add", "French", "Au revoir", "Goodbye", "-t", "farewell,polite",
        "--db", populated_db,
    )
    assert result.exit_code == 0, result.output

    with DeckDatabase(populated_db) as db:
        card = db.resolve_deck("French").cards[-1]
    assert card.front == "Au revoir"
    assert card.tags == {"farewell", "polite"}

    result = invoke("card", "edit", "French", card.id, "--back", "Bye", "--db", populated_db)
    assert result.exit_code == 0, result.output
    with DeckDatabase(populated_db) as db:
        assert db.resolve_deck("French").get_card(card.id).back == "Bye"

    result = invoke("card", "delete", "French", card.id, "--db", populated_db)
    assert result.exit_code == 0
    with DeckDatabase(populated_db) as db:
        assert db.resolve_deck("French").get_card(card.id) is None


def test_card_notes(populated_db: Path):
    result = invoke(
        "card", "add", "French", "Salut", "Hi", "--notes", "informal greeting",
        "--db", populated_db,
    )
    assert result.exit_code == 0, result.output
    with DeckDatabase(populated_db) as db:
        card = db.resolve_deck("French").cards[-1]
    assert card.notes == "informal greeting"

    result = invoke("card", "edit", "French", card.id, "--notes", "casual", "--db", populated_db)
    assert result.exit_code == 0, result.output
    with DeckDatabase(populated_db) as db:
        edited = db.resolve_deck("French").get_card(card.id)
    assert edited.notes == "casual"
    assert edited.back == "Hi"


def test_card_edit_keeps_review_history(populated_db: Path):
    result = invoke(
        "card", "edit", "French", "card-reviewed", "--front", "Merci bien",
        "--db", populated_db,
    )
    assert result.exit_code == 0
    with DeckDatabase(populated_db) as db:
        card = db.resolve_deck("French").get_card("card-reviewed")
    assert card.front == "Merci bien"
    assert len(card.review_history) == 2
    assert card.interval == 3


def test_card_edit_unknown_card(populated_db: Path):
    result = invoke("card", "edit", "French", "nope", "--back", "x", "--db", populated_db)
    assert result.exit_code == 1
    assert "not found" in normalize_output(result.output)


def test_card_delete_unknown_card(populated_db: Path):
    result = invoke("card", "delete", "French", "nope", "--db", populated_db)
    assert result.exit_code == 1


# --- import ---


def test_import_csv(tmp_path: Path, db_path: Path):
    csv_file = tmp_path / "french.csv"
    csv_file.write_text('"Bonjour","Hello"\n', encoding="utf-8")

    result = invoke("import", "csv", csv_file, "--db", db_path)
    assert result.exit_code == 0, result.output
    assert "Imported French (1 cards)" in normalize_output(result.output)

    with DeckDatabase(db_path) as db:
        card = db.resolve_deck("French").cards[0]
    assert card.interval == 0
    assert card.ease_factor == pytest.approx(2.5)

    # importing the same deck name again is skipped
    result = invoke("import", "csv", csv_file, "--db", db_path)
    assert "Skipped French (already exists)" in normalize_output(result.output)


def test_import_folder(tmp_path: Path, db_path: Path):
    folder = tmp_path / "csvs"
    folder.mkdir()
    (folder / "spanish_verbs.csv").write_text("hablar,to speak\n", encoding="utf-8")
    (folder / "german.csv").write_text("Hund,dog\nKatze,cat\n", encoding="utf-8")

    result = invoke("import", "folder", folder, "--db", db_path)
    assert result.exit_code == 0, result.output
    assert "2 decks imported, 0 skipped" in normalize_output(result.output)
    with DeckDatabase(db_path) as db:
        assert [i.name for i in db.list_decks()] == ["German", "Spanish Verbs"]


def test_import_anki_text(tmp_path: Path, db_path: Path):
    export = tmp_path / "animals.txt"
    export.write_text("#separator:tab\nperro\tdog\tanimals\n", encoding="utf-8")

    result = invoke("import", "anki", export, "--db", db_path)
    assert result.exit_code == 0, result.output
    with DeckDatabase(db_path) as db:
        deck = db.resolve_deck("Animals")
    assert deck.cards[0].tags == {"animals"}


def test_import_anki_package(tmp_path: Path, db_path: Path, sample_collection: Collection):
    package = write_package(tmp_path / "decks.apkg", sample_collection)

    result = invoke("import", "anki", package, "--db", db_path)
    assert result.exit_code == 0, result.output
    with DeckDatabase(db_path) as db:
        assert db.load_deck("deck-french").get_card("card-reviewed").interval == 3


def test_import_unknown_format(tmp_path: Path, db_path: Path):
    notes = tmp_path / "notes.md"
    notes.write_text("plain words\n", encoding="utf-8")
    result = invoke("import", "anki", notes, "--db", db_path)
    assert result.exit_code == 1
    assert "Unknown file format" in normalize_output(result.output)


def test_import_corrupt_package(tmp_path: Path, db_path: Path):
    broken = tmp_path / "broken.apkg"
    broken.write_bytes(b"not a zip")
    result = invoke("import", "anki", broken, "--db", db_path)
    assert result.exit_code == 1
    assert "Could not read import file" in normalize_output(result.output)


def test_import_backup_skips_existing_ids(
    tmp_path: Path, populated_db: Path, sample_collection: Collection
):
    extra = Collection(decks=[])
    extra.create_deck("Italian")
    combined = Collection(decks=[sample_collection.decks[0], extra.decks[0]])
    backup = write_backup(tmp_path / "backup.json", combined)

    result = invoke("import", "backup", backup, "--db", populated_db)
    assert result.exit_code == 0, result.output
    output = normalize_output(result.output)
    assert "Skipped French" in output
    assert "Imported Italian (0 cards)" in output


def test_import_backup_unsupported_version(tmp_path: Path, db_path: Path):
    backup = tmp_path / "future.json"
    backup.write_text(json.dumps({"version": 99, "decks": []}), encoding="utf-8")
    result = invoke("import", "backup", backup, "--db", db_path)
    assert result.exit_code == 1
    assert "version 99" in normalize_output(result.output)


# --- export ---


def test_export_anki_all_and_selected(tmp_path: Path, populated_db: Path):
    output = tmp_path / "out" / "all.apkg"
    result = invoke("export", "anki", output, "--db", populated_db)
    assert result.exit_code == 0, result.output
    assert "Exported 3 decks" in normalize_output(result.output)
    assert output.exists()

    selected = tmp_path / "french.apkg"
    result = invoke(
        "export", "anki", selected, "--deck", "french", "--deck", "deck-french",
        "--db", populated_db,
    )
    assert "Exported 1 decks" in normalize_output(result.output)


def test_export_anki_unknown_deck(tmp_path: Path, populated_db: Path):
    result = invoke("export", "anki", tmp_path / "x.apkg", "--deck", "German", "--db", populated_db)
    assert result.exit_code == 1
    assert not (tmp_path / "x.apkg").exists()


def test_export_anki_empty_store(tmp_path: Path, db_path: Path):
    result = invoke("export", "anki", tmp_path / "x.apkg", "--db", db_path)
    assert result.exit_code == 0
    assert "No decks to export." in result.output


def test_export_backup_then_restore_into_new_store(
    tmp_path: Path, populated_db: Path, sample_collection: Collection
):
    backup = tmp_path / "backup.json"
    result = invoke("export", "backup", backup, "--db", populated_db)
    assert result.exit_code == 0, result.output

    fresh = tmp_path / "fresh.db"
    result = invoke("import", "backup", backup, "--db", fresh)
    assert result.exit_code == 0, result.output
    with DeckDatabase(fresh) as db:
        restored = db.load_collection()
    assert [d.model_dump() for d in restored.decks] == [
        d.model_dump() for d in sample_collection.decks
    ]


def test_export_backup_default_location(tmp_path: Path, populated_db: Path, monkeypatch):
    from flashdeck.cli import main as cli_main

    monkeypatch.setattr(cli_main.settings, "backup_dir", tmp_path / "backups-json")
    result = invoke("export", "backup", "--db", populated_db)
    assert result.exit_code == 0, result.output
    written = list((tmp_path / "backups-json").glob("flashdeck_backup_*.json"))
    assert len(written) == 1


# --- review, stats, restore ---


def test_review_session(populated_db: Path):
    # card-reviewed is overdue and comes first, then the new card;
    # each card takes Enter to reveal the back and a rating
    with patch("rich.console.Console.input", side_effect=["", "3", "", "good"]):
        result = invoke("review", "French", "--db", populated_db)
    assert result.exit_code == 0, result.output
    output = normalize_output(result.output)
    assert "Merci" in output
    assert "Bonjour" in output
    assert "Next due in 8 days" in output
    assert "Next due in 1 days" in output
    assert "2 reviews over 2 cards" in output
    assert (populated_db.parent / "backups").is_dir()

    with DeckDatabase(populated_db) as db:
        deck = db.resolve_deck("French")
    assert deck.get_card("card-new").repetitions == 1
    assert len(deck.get_card("card-reviewed").review_history) == 3
    assert deck.last_studied is not None


def test_review_unknown_deck(populated_db: Path):
    result = invoke("review", "German", "--db", populated_db)
    assert result.exit_code == 1
    assert "not found" in normalize_output(result.output)


def test_stats(populated_db: Path):
    result = invoke("stats", "--db", populated_db)
    assert result.exit_code == 0, result.output
    output = normalize_output(result.output)
    assert re.search(r"Total Decks\W+3\b", output)
    assert re.search(r"Total Reviews\W+2\b", output)
    assert "Spanish Verbs" in output


def test_stats_empty(db_path: Path):
    result = invoke("stats", "--db", db_path)
    assert result.exit_code == 0
    assert "No decks found in the database." in result.output


def test_restore_without_backups(db_path: Path):
    result = invoke("restore", "--db", db_path, "--yes")
    assert result.exit_code == 1
    assert "No backup files found" in result.output


def test_restore_latest_backup(populated_db: Path):
    from flashdeck.db.db_utils import backup_database

    backup_database(populated_db)
    with DeckDatabase(populated_db) as db:
        db.delete_deck("deck-french")

    result = invoke("restore", "--db", populated_db, "--yes")
    assert result.exit_code == 0, result.output
    with DeckDatabase(populated_db) as db:
        assert db.deck_name_exists("French")


def test_db_from_environment(db_path: Path, monkeypatch):
    monkeypatch.setenv("FLASHDECK_DB", str(db_path))
    result = runner.invoke(app, ["deck", "create", "Env Deck"])
    assert result.exit_code == 0, result.output
    with DeckDatabase(db_path) as db:
        assert db.deck_name_exists("Env Deck")
