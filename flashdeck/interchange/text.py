"""
Parsers for flat text card lists: CSV files and Anki's plain-text export.

Both produce a single Deck whose cards carry the default scheduling state.
Malformed rows are skipped with a warning rather than aborting the import.
"""

import csv
import io
import logging
import re
from pathlib import Path
from typing import List, Optional, Union

from ..exceptions import FormatError
from ..models import Card, Deck

logger = logging.getLogger(__name__)

HEADER_FIRST_CELL = "front"


def deck_name_from_filename(name: Union[str, Path]) -> str:
    """
    Turn a file name into a deck name: "spanish_verbs.csv" -> "Spanish Verbs".
    """
    stem = Path(name).stem
    words = [w for w in re.split(r"[_\-\s]+", stem) if w]
    if not words:
        return stem or "Imported Deck"
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def _make_card(front: str, back: str, tags: Optional[List[str]] = None) -> Card:
    return Card(front=front, back=back, tags=set(tags or ()))


def parse_csv(text: str, deck_name: str) -> Deck:
    """
    Parse "front,back" rows into a new deck.

    A first row whose first cell is "front" (any case) is taken as a header.
    Rows with fewer than two fields or an empty side are skipped.

    Raises:
        FormatError: If the text is not readable as CSV.
    """
    deck = Deck(name=deck_name)
    reader = csv.reader(io.StringIO(text))
    try:
        for index, row in enumerate(reader):
            if index == 0 and row and row[0].strip().lower() == HEADER_FIRST_CELL:
                continue
            if not row or all(not cell.strip() for cell in row):
                continue
            if len(row) < 2:
                logger.warning(f"Skipping CSV row {index}: expected front,back")
                continue
            front, back = row[0].strip(), row[1].strip()
            if not front or not back:
                logger.warning(f"Skipping CSV row {index}: empty front or back")
                continue
            deck.insert_card(_make_card(front, back))
    except csv.Error as e:
        raise FormatError(
            f"Malformed CSV near line {reader.line_num}: {e}",
            record_index=reader.line_num,
            original_exception=e,
        ) from e

    logger.info(f"Parsed {len(deck.cards)} cards from CSV into deck '{deck_name}'")
    return deck


def _split_anki_line(line: str) -> List[str]:
    delimiter = "\t" if "\t" in line else ";"
    return next(csv.reader([line], delimiter=delimiter), [])


def parse_anki_text(text: str, deck_name: str) -> Deck:
    """
    Parse Anki's "Notes in Plain Text" export: front<TAB>back[<TAB>tags].

    Lines without a tab are split on ";" instead. Lines starting with "#" are
    directives or comments and are ignored. Tags are space-separated.
    """
    deck = Deck(name=deck_name)
    for index, raw_line in enumerate(text.splitlines()):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            fields = _split_anki_line(line)
        except csv.Error as e:
            logger.warning(f"Skipping line {index}: {e}")
            continue
        if len(fields) < 2:
            logger.warning(f"Skipping line {index}: expected front and back fields")
            continue
        front, back = fields[0].strip(), fields[1].strip()
        if not front or not back:
            logger.warning(f"Skipping line {index}: empty front or back")
            continue
        tags = fields[2].split() if len(fields) > 2 else []
        deck.insert_card(_make_card(front, back, tags))

    logger.info(
        f"Parsed {len(deck.cards)} cards from Anki text into deck '{deck_name}'"
    )
    return deck


def read_csv_file(path: Union[str, Path], deck_name: Optional[str] = None) -> Deck:
    path = Path(path)
    text = path.read_text(encoding="utf-8-sig")
    try:
        return parse_csv(text, deck_name or deck_name_from_filename(path))
    except FormatError as e:
        raise e.with_source(path)


def read_csv_folder(folder: Union[str, Path]) -> List[Deck]:
    """One deck per *.csv file in the folder, named after the file."""
    folder = Path(folder)
    if not folder.is_dir():
        raise NotADirectoryError(f"Not a directory: {folder}")
    decks: List[Deck] = []
    for path in sorted(folder.glob("*.csv")):
        decks.append(read_csv_file(path))
    return decks
