"""
Command-line interface for reviewing flashcards.
"""

import logging
from typing import Dict

from rich.console import Console
from rich.panel import Panel

from flashdeck.models import Card, Rating, utc_now
from flashdeck.review_manager import ReviewSessionManager
from flashdeck.scheduler import SM2Scheduler

logger = logging.getLogger(__name__)
console = Console()

RATING_STYLES = {
    Rating.Again: "red",
    Rating.Hard: "yellow",
    Rating.Good: "green",
    Rating.Easy: "blue",
}


def _rating_prompt(labels: Dict[Rating, str]) -> str:
    parts = []
    for rating in Rating:
        style = RATING_STYLES[rating]
        label = labels.get(rating)
        suffix = f" ({label})" if label else ""
        parts.append(f"[{style}]{int(rating)}:{rating.name}{suffix}[/{style}]")
    return "[bold]Rating[/bold] " + "  ".join(parts) + ": "


def _get_user_rating(labels: Dict[Rating, str]) -> Rating:
    """
    Prompt until a valid rating is entered. Accepts 1-4 or a rating name.
    """
    while True:
        answer = console.input(_rating_prompt(labels))
        try:
            return Rating.parse(answer)
        except ValueError:
            console.print(
                "[bold red]Invalid rating. Enter 1-4 or Again/Hard/Good/Easy.[/bold red]"
            )


def _display_card(card: Card) -> None:
    """Show the front, wait for Enter, then reveal the back."""
    console.print(Panel(card.front, title="Front", border_style="green"))
    console.input("[italic]Press Enter to see the back...[/italic]")
    console.print(Panel(card.back, title="Back", border_style="blue"))


def _preview_labels(manager: ReviewSessionManager, card: Card) -> Dict[Rating, str]:
    scheduler = manager.scheduler
    if isinstance(scheduler, SM2Scheduler):
        return scheduler.preview_intervals(card.scheduling_state, utc_now())
    return {}


def start_review_flow(manager: ReviewSessionManager) -> None:
    """
    Manages the command-line review session flow.

    Args:
        manager: An initialized-or-not ReviewSessionManager for one deck.
    """
    console.print("[bold cyan]Starting review session...[/bold cyan]")
    manager.initialize_session()

    total = len(manager.review_queue)
    if total == 0:
        console.print("[bold yellow]No cards are due for review.[/bold yellow]")
        console.print("[bold cyan]Review session finished.[/bold cyan]")
        return

    shown = 0
    while (card := manager.get_next_card()) is not None:
        shown += 1
        console.rule(
            f"[bold]Card {shown} ({len(manager.review_queue)} left in queue)[/bold]"
        )

        _display_card(card)
        rating = _get_user_rating(_preview_labels(manager, card))

        try:
            updated = manager.submit_review(card_id=card.id, rating=rating)
        except Exception as e:
            logger.error(f"Failed to submit review for {card.id}: {e}")
            console.print(
                "[bold red]Error submitting review. Ending the session.[/bold red]"
            )
            break

        if rating == Rating.Again:
            console.print("[yellow]Again.[/yellow] The card will come back in this session.")
        elif updated.due_at is not None:
            console.print(
                f"[green]Reviewed.[/green] Next due in [bold]{updated.interval} days[/bold] "
                f"on {updated.due_at.strftime('%Y-%m-%d')}."
            )
        else:
            console.print("[green]Reviewed.[/green]")
        console.print("")

    stats = manager.end_session()
    console.print(
        f"[bold cyan]Review session finished. {stats['reviewed_cards']} reviews "
        f"over {stats['total_cards']} cards. Well done![/bold cyan]"
    )
