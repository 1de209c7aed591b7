from pathlib import Path
from typing import Optional, Union


class DatabaseError(Exception):
    """Base exception for database-related errors."""

    def __init__(
        self, message: str, original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.original_exception = original_exception


class DatabaseConnectionError(DatabaseError):
    """Raised for errors connecting to the database."""

    pass


class SchemaInitializationError(DatabaseError):
    """Raised for errors during schema setup."""

    pass


class CardOperationError(DatabaseError):
    """Raised for errors during card operations (CRUD)."""

    pass


class MarshallingError(DatabaseError):
    """Indicates an error during data conversion between application models
    and DB format."""

    pass

class DeckNotFoundError(DatabaseError):
    """Raised when a specified deck is not found."""

    pass

class CardNotFoundError(DatabaseError):
    """Raised when a card id does not exist in the given deck."""

    pass

class InterchangeError(Exception):
    """Base exception for import/export codec failures.

    Carries enough context (source path, record index) to be shown to a user.
    """

    def __init__(
        self,
        message: str,
        source: Optional[Union[str, Path]] = None,
        record_index: Optional[int] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.record_index = record_index
        self.original_exception = original_exception

    def with_source(self, source: Union[str, Path]) -> "InterchangeError":
        """Attach the source path once it is known (codecs only see bytes)."""
        self.source = source
        return self

    def __str__(self) -> str:
        parts = []
        if self.source is not None:
            parts.append(str(self.source))
        if self.record_index is not None:
            parts.append(f"record {self.record_index}")
        prefix = ": ".join(parts)
        return f"{prefix}: {self.message}" if prefix else self.message

class FormatError(InterchangeError):
    """Input is structurally unrecognizable (not a zip, not JSON, no tables)."""

    pass

class CorruptDataError(InterchangeError):
    """Recognizable structure, but a required field is missing or invalid."""

    pass

class UnsupportedVersionError(InterchangeError):
    """Recognized format carrying a version number this codec cannot read."""

    pass
