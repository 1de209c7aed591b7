"""Database package for flashdeck.

DeckDatabase is the public API; MergeResult describes the outcome of an import.
"""

from .database import DeckDatabase, MergeResult

__all__ = ["DeckDatabase", "MergeResult"]
