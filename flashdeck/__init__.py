"""Flashdeck - spaced-repetition flashcards with Anki package interchange."""

from .models import Card, Collection, Deck, DeckInfo, DeckStats, Rating, ReviewEvent
from .constants import DEFAULT_EASE_FACTOR, MINIMUM_EASE_FACTOR
from .scheduler import SM2Scheduler, SM2SchedulerConfig, schedule
from .db import DeckDatabase

__all__ = [
    "Card",
    "Collection",
    "Deck",
    "DeckInfo",
    "DeckStats",
    "Rating",
    "ReviewEvent",
    "DEFAULT_EASE_FACTOR",
    "MINIMUM_EASE_FACTOR",
    "SM2Scheduler",
    "SM2SchedulerConfig",
    "schedule",
    "DeckDatabase",
]
