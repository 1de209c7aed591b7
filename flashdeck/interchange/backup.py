"""
JSON backup of a whole Collection.

The document is the Collection model serialized by pydantic:

    {"version": 1, "created_at": "...", "decks": [{..., "cards": [...]}]}

Decoding is strict about the structure but tolerant of nothing else: a
backup either restores exactly or fails with an InterchangeError.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from ..constants import BACKUP_FORMAT_VERSION
from ..exceptions import (
    CorruptDataError,
    FormatError,
    InterchangeError,
    UnsupportedVersionError,
)
from ..models import Collection, utc_now
from .atomic import write_text_atomic

logger = logging.getLogger(__name__)

BACKUP_FILENAME_PREFIX = "flashdeck_backup_"


def encode_backup(collection: Collection) -> str:
    return collection.model_dump_json(indent=2)


def _deck_index_of(error: ValidationError) -> Optional[int]:
    """Index into "decks" of the first validation error, if it points there."""
    for detail in error.errors():
        loc = detail.get("loc", ())
        if len(loc) >= 2 and loc[0] == "decks" and isinstance(loc[1], int):
            return loc[1]
    return None


def decode_backup(text: Union[str, bytes]) -> Collection:
    """
    Parse a JSON backup document.

    Raises:
        FormatError: If the text is not a JSON object.
        UnsupportedVersionError: If the version is not one this build writes.
        CorruptDataError: If the version is missing or a record is invalid.
    """
    try:
        document: Any = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FormatError(f"Backup is not valid JSON: {e}", original_exception=e) from e
    if not isinstance(document, dict):
        raise FormatError("Backup must be a JSON object.")

    version = document.get("version")
    if version is None:
        raise CorruptDataError("Backup has no 'version' field.")
    if isinstance(version, bool) or not isinstance(version, int):
        raise CorruptDataError(f"Backup version must be an integer, got {version!r}.")
    if version != BACKUP_FORMAT_VERSION:
        raise UnsupportedVersionError(
            f"Backup version {version} is not supported "
            f"(expected {BACKUP_FORMAT_VERSION})."
        )

    try:
        collection = Collection.model_validate(document)
    except ValidationError as e:
        raise CorruptDataError(
            f"Backup contains invalid data: {e}",
            record_index=_deck_index_of(e),
            original_exception=e,
        ) from e

    logger.info(
        f"Decoded backup: {len(collection.decks)} decks, "
        f"{collection.card_count} cards"
    )
    return collection


def default_backup_path(
    directory: Optional[Path] = None, now: Optional[datetime] = None
) -> Path:
    """
    flashdeck_backup_<timestamp>.json in the given directory, the user's
    Documents folder, or the home directory, in that order of preference.
    """
    if directory is None:
        documents = Path.home() / "Documents"
        directory = documents if documents.is_dir() else Path.home()
    stamp = (now or utc_now()).strftime("%Y%m%d_%H%M%S")
    return Path(directory) / f"{BACKUP_FILENAME_PREFIX}{stamp}.json"


def write_backup(path: Union[str, Path], collection: Collection) -> Path:
    path = Path(path)
    write_text_atomic(path, encode_backup(collection))
    logger.info(f"Backup written to {path}")
    return path


def read_backup(path: Union[str, Path]) -> Collection:
    path = Path(path)
    data = path.read_bytes()
    try:
        return decode_backup(data)
    except InterchangeError as e:
        raise e.with_source(path)


def backup_summary(collection: Collection) -> Dict[str, int]:
    return {
        "decks": len(collection.decks),
        "cards": collection.card_count,
        "reviews": sum(
            card.total_reviews for _, card in collection.iter_cards()
        ),
    }
