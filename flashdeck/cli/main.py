"""
CLI entry point for flashdeck.
"""

# Standard library imports
import shutil
from pathlib import Path
from typing import List, Optional

# Third-party imports
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Local application imports
from flashdeck.cli._export_logic import export_anki_logic, export_backup_logic
from flashdeck.cli._import_logic import (
    import_anki_logic,
    import_backup_logic,
    import_csv_logic,
    import_folder_logic,
)
from flashdeck.cli._review_logic import review_logic
from flashdeck.config import settings
from flashdeck.db.database import DeckDatabase, MergeResult
from flashdeck.db.db_utils import backup_database, find_latest_backup
from flashdeck.exceptions import (
    CardNotFoundError,
    DatabaseError,
    DeckNotFoundError,
    InterchangeError,
)
from flashdeck.interchange import default_backup_path
from flashdeck.models import Deck, utc_now

console = Console()

app = typer.Typer(
    name="flashdeck",
    help="Flashdeck: spaced-repetition flashcards with Anki import and export.",
    add_completion=False,
    rich_markup_mode="markdown",
)


# ---------------------------------------------------------------------------
# Helpers for resolving the --db path
# ---------------------------------------------------------------------------


def _resolve_db_path(db: Optional[Path]) -> Path:
    """--db flag or FLASHDECK_DB, falling back to the configured db_path."""
    if db is not None:
        return db
    return settings.db_path


# Common typer options reused across commands
_db_option = typer.Option(  # noqa: B008
    None,
    "--db",
    help="Path to the DuckDB database file. Falls back to FLASHDECK_DB env var.",
    envvar="FLASHDECK_DB",
)

_tag_option = typer.Option(  # noqa: B008
    None,
    "--tag",
    "-t",
    help="Tag to attach (repeatable).",
)


def _fail(message: str, exc: Optional[BaseException] = None) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    if exc is not None:
        raise typer.Exit(code=1) from exc
    raise typer.Exit(code=1)


def _parse_tags(tags: Optional[List[str]]) -> Optional[set]:
    if not tags:
        return None
    result = set()
    for value in tags:
        result.update(t for t in value.replace(",", " ").split() if t)
    return result


# ---------------------------------------------------------------------------
# Deck commands
# ---------------------------------------------------------------------------

deck_app = typer.Typer(name="deck", help="Create, list, show and delete decks.")
app.add_typer(deck_app)


@deck_app.command("create")
def deck_create(
    name: str = typer.Argument(..., help="Name of the new deck."),  # noqa: B008
    description: str = typer.Option("", "--description", "-d"),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Create an empty deck."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            if db_inst.deck_name_exists(name):
                _fail(f"A deck named '{name}' already exists.")
            deck = Deck(name=name, description=description)
            db_inst.save_deck(deck)
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)
    console.print(f"[green]Created deck[/green] [bold cyan]{name}[/bold cyan] ({deck.id})")


@deck_app.command("list")
def deck_list(db: Optional[Path] = _db_option):
    """List all decks with their card counts."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            decks = db_inst.list_decks()
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)

    if not decks:
        console.print("[yellow]No decks found.[/yellow]")
        return

    table = Table(title="Decks")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Cards", style="magenta", justify="right")
    table.add_column("Description")
    for info in decks:
        table.add_row(info.id, info.name, str(info.card_count), info.description)
    console.print(table)


@deck_app.command("show")
def deck_show(
    deck: str = typer.Argument(..., help="Deck id or name."),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Show a deck's statistics and cards."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            target = db_inst.resolve_deck(deck)
    except DeckNotFoundError as e:
        _fail(str(e), e)
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)

    stats = target.get_stats(utc_now())
    console.print(
        Panel(
            f"{target.description or '[dim]No description[/dim]'}\n\n"
            f"Total: {stats.total_cards}  New: {stats.new_cards}  "
            f"Due: {stats.due_cards}  Learning: {stats.learning_cards}  "
            f"Mature: {stats.mature_cards}",
            title=target.name,
            border_style="cyan",
        )
    )
    if not target.cards:
        return

    table = Table()
    table.add_column("ID", style="dim")
    table.add_column("Front", style="cyan")
    table.add_column("Back")
    table.add_column("Tags", style="yellow")
    table.add_column("Interval", justify="right")
    table.add_column("Due")
    for card in target.cards:
        table.add_row(
            card.id,
            card.front,
            card.back,
            ", ".join(sorted(card.tags)),
            f"{card.interval}d",
            card.due_at.strftime("%Y-%m-%d %H:%M") if card.due_at else "now",
        )
    console.print(table)


@deck_app.command("delete")
def deck_delete(
    deck: str = typer.Argument(..., help="Deck id or name."),  # noqa: B008
    yes: bool = typer.Option(False, "--yes", "-y", help="Bypass confirmation prompt."),
    db: Optional[Path] = _db_option,
):
    """Delete a deck and all of its cards."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            target = db_inst.resolve_deck(deck)
            if not yes and not typer.confirm(
                f"Delete deck '{target.name}' and its {len(target.cards)} cards?"
            ):
                console.print("Delete cancelled.")
                raise typer.Exit()
            db_inst.delete_deck(target.id)
    except DeckNotFoundError as e:
        _fail(str(e), e)
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)
    console.print(f"[green]Deleted deck[/green] [bold]{target.name}[/bold]")


# ---------------------------------------------------------------------------
# Card commands
# ---------------------------------------------------------------------------

card_app = typer.Typer(name="card", help="Add, edit and delete cards.")
app.add_typer(card_app)


@card_app.command("add")
def card_add(
    deck: str = typer.Argument(..., help="Deck id or name."),  # noqa: B008
    front: str = typer.Argument(..., help="Question text."),  # noqa: B008
    back: str = typer.Argument(..., help="Answer text."),  # noqa: B008
    tags: Optional[List[str]] = _tag_option,
    notes: str = typer.Option("", "--notes", help="Free-text notes."),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Add a card to a deck."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            target = db_inst.resolve_deck(deck)
            card = target.add_card(front, back, _parse_tags(tags), notes=notes)
            db_inst.save_card(target.id, card)
    except ValueError as e:
        _fail(f"Invalid card: {e}", e)
    except DeckNotFoundError as e:
        _fail(str(e), e)
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)
    console.print(f"[green]Added card[/green] {card.id} to [bold cyan]{target.name}[/bold cyan]")


@card_app.command("edit")
def card_edit(
    deck: str = typer.Argument(..., help="Deck id or name."),  # noqa: B008
    card_id: str = typer.Argument(..., help="Card id."),  # noqa: B008
    front: Optional[str] = typer.Option(None, "--front"),  # noqa: B008
    back: Optional[str] = typer.Option(None, "--back"),  # noqa: B008
    tags: Optional[List[str]] = _tag_option,
    notes: Optional[str] = typer.Option(None, "--notes"),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Change a card's text, tags or notes. Scheduling and history are kept."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            target = db_inst.resolve_deck(deck)
            card = target.edit_card(
                card_id, front=front, back=back, tags=_parse_tags(tags), notes=notes
            )
            if card is None:
                raise CardNotFoundError(
                    f"Card '{card_id}' not found in deck '{target.name}'."
                )
            db_inst.save_card(target.id, card)
    except ValueError as e:
        _fail(f"Invalid card: {e}", e)
    except (DeckNotFoundError, CardNotFoundError) as e:
        _fail(str(e), e)
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)
    console.print(f"[green]Updated card[/green] {card_id}")


@card_app.command("delete")
def card_delete(
    deck: str = typer.Argument(..., help="Deck id or name."),  # noqa: B008
    card_id: str = typer.Argument(..., help="Card id."),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Delete a card and its review history."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            target = db_inst.resolve_deck(deck)
            db_inst.delete_card(target.id, card_id)
    except (DeckNotFoundError, CardNotFoundError) as e:
        _fail(str(e), e)
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)
    console.print(f"[green]Deleted card[/green] {card_id}")


# ---------------------------------------------------------------------------
# Review command
# ---------------------------------------------------------------------------


@app.command()
def review(
    deck: str = typer.Argument(..., help="Id or name of the deck to review."),  # noqa: B008
    new_limit: Optional[int] = typer.Option(  # noqa: B008
        None,
        "--new-limit",
        "-n",
        min=0,
        help="Maximum number of new cards to introduce.",
    ),
    db: Optional[Path] = _db_option,
):
    """Starts a review session for the specified deck."""
    db_path = _resolve_db_path(db)
    try:
        backup_path = backup_database(db_path)
        if backup_path.exists() and "backups" in str(backup_path):
            console.print(f"Database backed up to: [dim]{backup_path}[/dim]")

        console.print(f"Starting review for deck: [bold cyan]{deck}[/bold cyan]")
        review_logic(deck=deck, db_path=db_path, new_card_limit=new_limit)
    except DeckNotFoundError as e:
        _fail(str(e), e)
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)


# ---------------------------------------------------------------------------
# Stats command
# ---------------------------------------------------------------------------


def _display_overall_stats(cons: Console, stats_data: dict):
    overall_table = Table(title="Overall Database Stats", show_header=False)
    overall_table.add_column("Metric", style="cyan")
    overall_table.add_column("Value", style="magenta")
    overall_table.add_row("Total Decks", str(stats_data["total_decks"]))
    overall_table.add_row("Total Cards", str(stats_data["total_cards"]))
    overall_table.add_row("New Cards", str(stats_data["new_cards"]))
    overall_table.add_row("Due Cards", str(stats_data["due_cards"]))
    overall_table.add_row("Total Reviews", str(stats_data["total_reviews"]))
    cons.print(overall_table)


def _display_deck_stats(cons: Console, stats_data: dict):
    decks_table = Table(title="Decks")
    decks_table.add_column("Deck Name", style="cyan")
    decks_table.add_column("Card Count", style="magenta")
    decks_table.add_column("New", style="green")
    decks_table.add_column("Due Count", style="yellow")
    for deck in stats_data["decks"]:
        decks_table.add_row(
            deck["deck_name"],
            str(deck["card_count"]),
            str(deck["new_count"]),
            str(deck["due_count"]),
        )
    cons.print(decks_table)


@app.command()
def stats(db: Optional[Path] = _db_option):
    """Display statistics about the deck database."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            stats_data = db_inst.get_database_stats()
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)

    _display_overall_stats(console, stats_data)
    if not stats_data["total_decks"]:
        console.print("[yellow]No decks found in the database.[/yellow]")
        return
    _display_deck_stats(console, stats_data)


# ---------------------------------------------------------------------------
# Import subcommand group
# ---------------------------------------------------------------------------

import_app = typer.Typer(name="import", help="Import decks from files.")
app.add_typer(import_app)


def _report_merge(result: MergeResult) -> None:
    for name, count in result.imported:
        console.print(f"- [green]Imported[/green] [cyan]{name}[/cyan] ({count} cards)")
    for name in result.skipped:
        console.print(f"- [yellow]Skipped[/yellow] [cyan]{name}[/cyan] (already exists)")
    console.print(
        f"[bold green]Import complete:[/bold green] {len(result.imported)} decks "
        f"imported, {len(result.skipped)} skipped."
    )


def _run_import(action) -> None:
    try:
        result = action()
    except InterchangeError as e:
        _fail(f"Could not read import file: {e}", e)
    except OSError as e:
        _fail(f"Could not read import file: {e}", e)
    except DatabaseError as e:
        _fail(f"A database error occurred: {e}", e)
    _report_merge(result)


@import_app.command("csv")
def import_csv(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),  # noqa: B008
    name: Optional[str] = typer.Option(  # noqa: B008
        None, "--name", help="Deck name (defaults to the file name)."
    ),
    db: Optional[Path] = _db_option,
):
    """Import a CSV file of front,back rows as a new deck."""
    db_path = _resolve_db_path(db)

    def action() -> MergeResult:
        with DeckDatabase(db_path=db_path) as db_inst:
            return import_csv_logic(db_inst, path, name)

    _run_import(action)


@import_app.command("folder")
def import_folder(
    folder: Path = typer.Argument(..., exists=True, file_okay=False),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Import every CSV file in a folder, one deck per file."""
    db_path = _resolve_db_path(db)

    def action() -> MergeResult:
        with DeckDatabase(db_path=db_path) as db_inst:
            return import_folder_logic(db_inst, folder)

    _run_import(action)


@import_app.command("anki")
def import_anki(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),  # noqa: B008
    name: Optional[str] = typer.Option(  # noqa: B008
        None, "--name", help="Deck name for text exports."
    ),
    db: Optional[Path] = _db_option,
):
    """Import an Anki package (.apkg) or Anki text export (.txt/.tsv)."""
    db_path = _resolve_db_path(db)

    def action() -> MergeResult:
        with DeckDatabase(db_path=db_path) as db_inst:
            return import_anki_logic(db_inst, path, name)

    _run_import(action)


@import_app.command("backup")
def import_backup(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Import decks from a JSON backup; decks already present are skipped."""
    db_path = _resolve_db_path(db)

    def action() -> MergeResult:
        with DeckDatabase(db_path=db_path) as db_inst:
            return import_backup_logic(db_inst, path)

    _run_import(action)


# ---------------------------------------------------------------------------
# Export subcommand group
# ---------------------------------------------------------------------------

export_app = typer.Typer(name="export", help="Export decks to different formats.")
app.add_typer(export_app)


@export_app.command("anki")
def export_anki(
    output: Path = typer.Argument(..., help="Path of the .apkg file to write."),  # noqa: B008
    decks: Optional[List[str]] = typer.Option(  # noqa: B008
        None, "--deck", help="Deck id or name to export (repeatable). Default: all."
    ),
    db: Optional[Path] = _db_option,
):
    """Export decks to an Anki package."""
    db_path = _resolve_db_path(db)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            count = export_anki_logic(db_inst, output, decks)
    except DeckNotFoundError as e:
        _fail(str(e), e)
    except (DatabaseError, InterchangeError, OSError) as e:
        _fail(f"An error occurred during export: {e}", e)

    if count == 0:
        console.print("[yellow]No decks to export.[/yellow]")
        return
    console.print(f"[bold green]Exported {count} decks to[/bold green] [cyan]{output}[/cyan]")


@export_app.command("backup")
def export_backup(
    output: Optional[Path] = typer.Argument(  # noqa: B008
        None, help="Backup file path. Default: Documents/flashdeck_backup_<time>.json"
    ),
    db: Optional[Path] = _db_option,
):
    """Export all decks to a JSON backup."""
    db_path = _resolve_db_path(db)
    target = output or default_backup_path(settings.backup_dir)
    try:
        with DeckDatabase(db_path=db_path) as db_inst:
            count = export_backup_logic(db_inst, target)
    except (DatabaseError, OSError) as e:
        _fail(f"An error occurred during export: {e}", e)
    console.print(f"[bold green]Exported {count} decks to[/bold green] [cyan]{target}[/cyan]")


# ---------------------------------------------------------------------------
# Restore command
# ---------------------------------------------------------------------------


@app.command()
def restore(
    db: Optional[Path] = _db_option,
    yes: bool = typer.Option(False, "--yes", "-y", help="Bypass confirmation prompt."),
):
    """Restores the database from the most recent automatic backup."""
    db_path = _resolve_db_path(db)
    console.print("[bold yellow]Attempting to restore database from backup...[/bold yellow]")

    latest_backup = find_latest_backup(db_path)
    if not latest_backup:
        console.print("[bold red]Error: No backup files found.[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"Found latest backup: [cyan]{latest_backup.name}[/cyan]")

    if not yes:
        confirmed = typer.confirm(
            "Are you sure you want to overwrite the current database with this backup?"
        )
        if not confirmed:
            console.print("Restore operation cancelled.")
            raise typer.Exit()

    try:
        shutil.copy2(latest_backup, db_path)
    except OSError as e:
        _fail(f"An unexpected error occurred during restore: {e}", e)
    console.print(
        f"[bold green]Database successfully restored from {latest_backup.name}[/bold green]"
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the CLI application, turning unexpected errors into exit code 1."""
    try:
        app()
    except Exception as e:
        console.print(f"[bold red]UNEXPECTED ERROR: {e}[/bold red]")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
