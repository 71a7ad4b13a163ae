"""
CSV input loading for bulk updates.

Reads a CSV file with a header row and turns each valid row into a
UserUpdateRecord. Rows without an identifier or without any attribute to
write are skipped with a warning; file-level problems raise InputError.
"""

import os
import csv
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional

from extattr_sync.attributes import ATTRIBUTE_SLOTS, CLEAR, slot_index

logger = logging.getLogger(__name__)

NULL_LITERAL = 'null'

DEFAULT_IDENTIFIER_COLUMN = 'UserPrincipalName'
IDENTIFIER_ALIASES = ('UserPrincipalName', 'UPN', 'Id', 'ObjectId', 'Identity')


class InputError(Exception):
    """Raised when the input file cannot be used at all."""
    pass


class NotFound(InputError):
    """Input path does not resolve to a readable file."""
    pass


class ParseError(InputError):
    """Input file could not be parsed as CSV."""
    pass


class EmptyInput(InputError):
    """Input has no data rows, or no valid records after filtering."""
    pass


@dataclass(frozen=True)
class UserUpdateRecord:
    """One user and the attributes to write for that user."""
    identifier: str
    attributes: Dict[str, Optional[str]] = field(hash=False)
    row_number: Optional[int] = None


class RowLoader:
    """
    Loads UserUpdateRecords from a CSV file.

    Supports a configurable identifier column with common aliases, a configurable
    delimiter, and whether empty cells mean "clear" or "leave unchanged".
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the loader.

        Args:
            config: Input configuration (identifier_column, delimiter, empty_means_clear)
        """
        config = config or {}
        self.identifier_column = config.get('identifier_column', DEFAULT_IDENTIFIER_COLUMN)
        self.delimiter = config.get('delimiter', ',')
        self.empty_means_clear = config.get('empty_means_clear', False)

        self.skipped_rows = []

    def load(self, path: str) -> List[UserUpdateRecord]:
        """
        Read and validate every row of the file.

        Args:
            path: Path to CSV file

        Returns:
            Valid records in input row order

        Raises:
            NotFound: If the file does not exist or is unreadable
            ParseError: If the data is not valid CSV
            EmptyInput: If there are no data rows or no valid records
        """
        self.skipped_rows = []

        if not path or not os.path.isfile(path) or not os.access(path, os.R_OK):
            raise NotFound(f"Input file not found or not readable: {path}")

        try:
            with open(path, 'r', encoding='utf-8-sig', newline='') as f:
                reader = csv.DictReader(f, delimiter=self.delimiter, strict=True)
                header = reader.fieldnames
                rows = list(reader)
        except (csv.Error, UnicodeDecodeError) as e:
            raise ParseError(f"Could not parse input file {path}: {e}")
        except OSError as e:
            raise NotFound(f"Could not read input file {path}: {e}")

        if not header:
            raise ParseError(f"Input file has no header row: {path}")

        if not rows:
            raise EmptyInput(f"Input file has no data rows: {path}")

        identifier_column = self._resolve_identifier_column(header)
        self._report_unknown_columns(header, identifier_column)

        records = []
        # Row 1 is the header
        for row_number, row in enumerate(rows, start=2):
            record = self._parse_row(row, row_number, identifier_column)
            if record:
                records.append(record)

        if not records:
            raise EmptyInput(f"No valid rows found in {path} "
                             f"({len(self.skipped_rows)} skipped)")

        logger.info(f"Loaded {len(records)} records from {path} "
                    f"({len(self.skipped_rows)} rows skipped)")
        return records

    def _resolve_identifier_column(self, header: List[str]) -> Optional[str]:
        """Find the identifier column, falling back to known aliases."""
        if self.identifier_column in header:
            return self.identifier_column

        for alias in IDENTIFIER_ALIASES:
            if alias in header:
                logger.info(f"Identifier column '{self.identifier_column}' not found, using '{alias}'")
                return alias

        logger.warning(f"Input has no identifier column '{self.identifier_column}'")
        return None

    def _report_unknown_columns(self, header: List[str], identifier_column: Optional[str]):
        unknown = [name for name in header
                   if name and name != identifier_column and slot_index(name) is None]
        if unknown:
            logger.warning(f"Ignoring unrecognized columns: {', '.join(unknown)}")

    def _parse_row(self, row: Dict[str, Any], row_number: int,
                   identifier_column: Optional[str]) -> Optional[UserUpdateRecord]:
        """Validate one row; returns None when the row is skipped."""
        identifier = (row.get(identifier_column) or '').strip() if identifier_column else ''
        if not identifier:
            self._skip(row_number, "missing identifier")
            return None

        attributes = {}
        for name in ATTRIBUTE_SLOTS:
            value = self._normalize_cell(row.get(name))
            if value is not _UNCHANGED:
                attributes[name] = value

        if not attributes:
            self._skip(row_number, f"no attributes to update for '{identifier}'")
            return None

        return UserUpdateRecord(identifier=identifier, attributes=attributes,
                                row_number=row_number)

    def _normalize_cell(self, value: Optional[str]):
        """Turn a raw cell into a value, CLEAR, or _UNCHANGED."""
        if value is None:
            return _UNCHANGED

        if value == NULL_LITERAL:
            return CLEAR

        if value == '':
            return CLEAR if self.empty_means_clear else _UNCHANGED

        if not value.strip():
            return _UNCHANGED

        return value

    def _skip(self, row_number: int, reason: str):
        logger.warning(f"Skipping row {row_number}: {reason}")
        self.skipped_rows.append((row_number, reason))


# Sentinel for cells that leave the attribute untouched
_UNCHANGED = object()
