# excel_bridge/services/cell_refs.py
from __future__ import annotations

import re
from typing import Optional, Tuple

from excel_bridge.errors import ValidationError

_CELL_RE = re.compile(r"^\$?([A-Za-z]{1,3})\$?(\d+)$")


def column_letter(index: int) -> str:
    """1 -> A, 27 -> AA."""
    if index < 1:
        raise ValueError(f"column index must be >= 1, got {index}")
    out = ""
    while index > 0:
        index, rem = divmod(index - 1, 26)
        out = chr(65 + rem) + out
    return out


def column_index(letters: str) -> int:
    """A -> 1, AA -> 27."""
    n = 0
    for ch in letters.upper():
        n = n * 26 + (ord(ch) - 64)
    return n


def a1(row: int, col: int) -> str:
    return f"{column_letter(col)}{row}"


def split_cell(ref: str) -> Tuple[int, int]:
    """'B12' -> (row=12, col=2)."""
    m = _CELL_RE.match(ref.strip())
    if not m:
        raise ValidationError(f"Invalid cell reference '{ref}'")
    return int(m.group(2)), column_index(m.group(1))


def parse_sheet_and_address(ref: str) -> Tuple[Optional[str], str]:
    """
    "Sheet1!A1:B2" -> ("Sheet1", "A1:B2"); "'My Sheet'!C3" -> ("My Sheet", "C3");
    "A1:B2" -> (None, "A1:B2").
    """
    ref = (ref or "").strip()
    if "!" not in ref:
        return None, ref
    sheet, _, address = ref.rpartition("!")
    sheet = sheet.strip()
    if len(sheet) >= 2 and sheet[0] == sheet[-1] == "'":
        sheet = sheet[1:-1].replace("''", "'")
    return (sheet or None), address.strip()


def parse_address(address: str) -> Tuple[int, int, int, int]:
    """A1-style address -> (first_row, first_col, last_row, last_col), 1-based inclusive."""
    _, address = parse_sheet_and_address(address)
    if not address:
        raise ValidationError("Range address is empty")
    start, _, end = address.partition(":")
    r1, c1 = split_cell(start)
    r2, c2 = split_cell(end) if end else (r1, c1)
    return min(r1, r2), min(c1, c2), max(r1, r2), max(c1, c2)


def range_address(first_row: int, first_col: int, rows: int, cols: int) -> str:
    last = a1(first_row + rows - 1, first_col + cols - 1)
    first = a1(first_row, first_col)
    return first if first == last else f"{first}:{last}"


def range_shape(address: str) -> Tuple[int, int]:
    r1, c1, r2, c2 = parse_address(address)
    return r2 - r1 + 1, c2 - c1 + 1
