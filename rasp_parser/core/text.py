# rasp_parser/core/text.py
import logging
import re
from typing import List, Optional, Tuple

from bs4 import NavigableString, Tag
from bs4.element import PreformattedString

from .constants import (BLOCK_TAGS, DASHES_RE, DATE_RE, LESSON_NUMBER_RE,
                        TEACHER_LINE_RE, WEEKDAYS_RU)
from .date_utils import StringDate

log = logging.getLogger(__name__)

_RE_WHITESPACE = re.compile(r"\s+")


def clean_text(text: Optional[str]) -> str:
    """Collapses whitespace runs (including non-breaking spaces) and trims."""
    if not text:
        return ""
    return _RE_WHITESPACE.sub(" ", text).strip()


def normalize_date(raw: str) -> Optional[str]:
    """
    Converts `d.m.yy` / `dd.mm.yyyy` into the canonical `dd.mm.yyyy` form.

    Returns:
        The canonical string or None when the value is not a real calendar date.
    """
    parts = raw.split(".")
    if len(parts) != 3:
        return None
    day, month, year = parts
    if len(year) == 2:
        year = "20" + year
    elif len(year) != 4:
        return None
    canonical = f"{day.zfill(2)}.{month.zfill(2)}.{year}"
    return canonical if StringDate.is_valid(canonical) else None


def parse_day_label(text: Optional[str]) -> Optional[Tuple[str, Optional[str]]]:
    """
    Parses a header cell's text as a day label.

    Args:
        text: Raw cell text, e.g. "Понедельник, 01.09.2025" or "01.09.25 вт".

    Returns:
        A tuple (canonical date, capitalized Russian weekday or None),
        or None if the text holds no valid date.
    """
    cleaned = clean_text(text)
    if not cleaned:
        return None
    match = DATE_RE.search(cleaned)
    if not match:
        return None
    day = normalize_date(match.group(1))
    if day is None:
        return None

    lowered = cleaned.lower()
    weekday = next((name for name in WEEKDAYS_RU if name in lowered), None)
    return day, weekday.capitalize() if weekday else None


def parse_lesson_number(text: Optional[str]) -> Optional[int]:
    """Returns the first integer found in the text."""
    match = LESSON_NUMBER_RE.search(text or "")
    return int(match.group(0)) if match else None


def is_teacher_line(line: str) -> bool:
    """True for lines shaped like "Иванов И.И." / "Petrov P."."""
    return bool(TEACHER_LINE_RE.match(line))


def remove_dashes(line: Optional[str]) -> Optional[str]:
    """Cells filled with dash placeholders ("-", "- -") carry no value."""
    if line is None:
        return None
    line = clean_text(line)
    if not line or DASHES_RE.match(line):
        return None
    return line


def extract_lines(cell: Optional[Tag]) -> List[str]:
    """
    Splits a cell's markup into clean, non-empty text lines.

    Text accumulates while walking the node tree depth-first; the buffer is
    flushed on <br> and when entering or leaving block elements.

    Args:
        cell: The table cell (or any element); None yields an empty list.

    Returns:
        Ordered list of whitespace-collapsed lines.
    """
    if cell is None:
        return []

    lines: List[str] = []
    buffer: List[str] = []

    def flush():
        line = clean_text("".join(buffer))
        buffer.clear()
        if line:
            lines.append(line)

    def walk(node: Tag):
        for child in node.children:
            if isinstance(child, NavigableString):
                # Comments, CDATA, doctype etc. carry no visible text
                if not isinstance(child, PreformattedString):
                    buffer.append(str(child))
                continue
            if not isinstance(child, Tag):
                continue
            name = child.name.lower() if child.name else ""
            if name == "br":
                flush()
                continue
            is_block = name in BLOCK_TAGS
            if is_block:
                flush()
            walk(child)
            if is_block:
                flush()

    walk(cell)
    flush()
    return lines
