"""Pick the right codec for a file handed to `import anki`."""

import logging
from pathlib import Path
from typing import List, Optional, Union

from ..exceptions import FormatError
from ..models import Deck
from .apkg import read_package
from .text import deck_name_from_filename, parse_anki_text

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt", ".tsv"}
DEFAULT_IMPORT_DECK_NAME = "Imported Deck"


def read_anki_export(
    path: Union[str, Path], deck_name: Optional[str] = None
) -> List[Deck]:
    """
    Load decks from an Anki package or an Anki plain-text export.

    ``.apkg`` files are decoded as packages and yield one deck per Anki deck;
    ``.txt``/``.tsv`` files and any other file whose content contains a tab or
    semicolon are parsed as text and yield a single deck.

    Raises:
        FormatError: If the file type cannot be determined.
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix == ".apkg":
        return list(read_package(path).decks)

    if suffix in TEXT_SUFFIXES:
        name = deck_name or deck_name_from_filename(path)
        text = path.read_text(encoding="utf-8-sig")
        return [parse_anki_text(text, name)]

    text = path.read_text(encoding="utf-8-sig", errors="replace")
    if "\t" in text or ";" in text:
        logger.debug(f"Treating {path} as Anki text export based on its content")
        return [parse_anki_text(text, deck_name or DEFAULT_IMPORT_DECK_NAME)]

    raise FormatError(
        "Unknown file format. Expected .apkg, .txt, or .tsv file.", source=path
    )
