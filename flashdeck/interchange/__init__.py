"""Import and export codecs: Anki packages, text card lists and JSON backups."""

from .apkg import decode_package, encode_package, read_package, write_package
from .atomic import write_bytes_atomic
from .backup import (
    decode_backup,
    default_backup_path,
    encode_backup,
    read_backup,
    write_backup,
)
from .loader import read_anki_export
from .text import (
    deck_name_from_filename,
    parse_anki_text,
    parse_csv,
    read_csv_file,
    read_csv_folder,
)

__all__ = [
    "decode_package",
    "encode_package",
    "read_package",
    "write_package",
    "write_bytes_atomic",
    "decode_backup",
    "default_backup_path",
    "encode_backup",
    "read_backup",
    "write_backup",
    "read_anki_export",
    "deck_name_from_filename",
    "parse_anki_text",
    "parse_csv",
    "read_csv_file",
    "read_csv_folder",
]
