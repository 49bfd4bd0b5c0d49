"""Read location CSV files into raw rows.

The format is a header row followed by data rows, with columns in repeating
groups of three: location name, type label, description. Each group is one
level deeper in the hierarchy than the one before it.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from pathlib import Path

GROUP_WIDTH = 3

SAMPLE_CSV = """\
Building,type,description,Room,type,description,Bed,type,description
Main Building,building,Main hospital building,ICU,ward,Intensive Care Unit,Bed 1,bed,ICU Bed 1
Main Building,building,Main hospital building,ICU,ward,Intensive Care Unit,Bed 2,bed,ICU Bed 2
Main Building,building,Main hospital building,Reception,room,Main reception area,Waiting Area,area,Patient waiting space
"""


class FormatError(ValueError):
    """Raised when the header is not a positive multiple of three columns."""


@dataclass
class LocationSheet:
    """Rows read from one CSV file, ready for the hierarchy parser."""

    header: list[str]
    rows: list[list[str]] = field(default_factory=list)
    skipped_lines: list[int] = field(default_factory=list)  # rows narrower than the header
    source: str = ""

    @property
    def depth(self) -> int:
        return len(self.header) // GROUP_WIDTH


def validate_header(header: list[str]) -> None:
    width = len(header)
    if width < GROUP_WIDTH or width % GROUP_WIDTH != 0:
        raise FormatError(
            f"CSV format is invalid: {width} columns found, expected groups of "
            f"{GROUP_WIDTH} columns (location, type, description)"
        )


def parse_location_text(text: str, source: str = "") -> LocationSheet:
    """Parse CSV text into a LocationSheet.

    Blank lines are skipped. Cells are whitespace-stripped. Rows with fewer
    cells than the header are skipped and their line numbers recorded; cells
    beyond the header width are ignored.

    Raises FormatError before reading any data row if the header is malformed.
    """
    text = text.lstrip("\ufeff")
    reader = csv.reader(io.StringIO(text))

    header: list[str] | None = None
    for raw in reader:
        if not any(c.strip() for c in raw):
            continue
        header = [c.strip() for c in raw]
        break
    if header is None:
        raise FormatError("CSV file is empty: a header row is required")
    validate_header(header)

    sheet = LocationSheet(header=header, source=source)
    width = len(header)
    for raw in reader:
        if not any(c.strip() for c in raw):
            continue
        if len(raw) < width:
            sheet.skipped_lines.append(reader.line_num)
            continue
        sheet.rows.append([c.strip() for c in raw[:width]])
    return sheet


def read_location_csv(path: str | Path) -> LocationSheet:
    """Read a location CSV from disk. See parse_location_text().

    Raises FormatError if the file is not UTF-8 text.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise FormatError(
            f"{p} is not UTF-8 text (byte {e.start}); re-save it as CSV UTF-8"
        ) from e
    return parse_location_text(text, source=str(p))
