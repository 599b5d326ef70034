# rasp_parser/core/grid.py
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from bs4 import Tag

from .text import clean_text, parse_day_label

log = logging.getLogger(__name__)


@dataclass
class GridCell:
    """A logical grid position; `row`/`col` are where the source cell starts."""
    source: Tag
    row: int
    col: int


@dataclass
class DayRange:
    """A header day and the grid columns it owns."""
    day: str
    weekday: Optional[str]
    start: int
    span: int


@dataclass
class TableGrid:
    """
    Rectangular view of a table after colspan/rowspan normalization.

    Cells are stored in a flat arena indexed by `row * width + col`;
    `row_lengths` keeps how far each row actually extends.
    """
    cells: List[Optional[GridCell]]
    row_lengths: List[int]
    width: int
    height: int

    def at(self, row: int, col: int) -> Optional[GridCell]:
        if row < 0 or row >= self.height or col < 0 or col >= self.width:
            return None
        return self.cells[row * self.width + col]

    def row(self, index: int) -> List[Optional[GridCell]]:
        start = index * self.width
        return self.cells[start:start + self.row_lengths[index]]


@dataclass
class _PendingSpan:
    cell: GridCell
    remaining: int


def _span_value(cell: Tag, attr: str) -> int:
    try:
        return max(1, int(cell.get(attr, 1)))
    except (TypeError, ValueError):
        return 1


def iter_table_rows(table: Tag) -> Iterator[Tag]:
    """Yields the table's own rows (directly or via thead/tbody/tfoot), not nested tables' rows."""
    for child in table.find_all(recursive=False):
        if child.name == "tr":
            yield child
        elif child.name in ("thead", "tbody", "tfoot"):
            yield from child.find_all("tr", recursive=False)


def build_table_grid(table: Tag) -> TableGrid:
    """
    Normalizes an HTML table into a rectangular logical grid.

    Columns covered by a rowspan from an earlier row are filled first; the
    row's physical cells then take the next free columns, each replicated
    across its colspan.

    Args:
        table: The <table> element.

    Returns:
        The TableGrid; every column a spanned cell covers references that cell.
    """
    pending: Dict[int, _PendingSpan] = {}
    rows: List[Dict[int, GridCell]] = []

    for row_index, tr in enumerate(iter_table_rows(table)):
        current: Dict[int, GridCell] = {}

        for col in sorted(pending):
            span = pending[col]
            current[col] = span.cell
            span.remaining -= 1
            if span.remaining <= 0:
                del pending[col]

        col = 0
        for td in tr.find_all(["td", "th"], recursive=False):
            while col in current:
                col += 1
            colspan = _span_value(td, "colspan")
            rowspan = _span_value(td, "rowspan")
            grid_cell = GridCell(source=td, row=row_index, col=col)
            for offset in range(colspan):
                current[col + offset] = grid_cell
                if rowspan > 1:
                    pending[col + offset] = _PendingSpan(grid_cell, rowspan - 1)
            col += colspan

        rows.append(current)

    row_lengths = [max(row) + 1 if row else 0 for row in rows]
    width = max(row_lengths, default=0)
    height = len(rows)

    cells: List[Optional[GridCell]] = [None] * (width * height)
    for row_index, row in enumerate(rows):
        for col, grid_cell in row.items():
            cells[row_index * width + col] = grid_cell

    return TableGrid(cells=cells, row_lengths=row_lengths, width=width, height=height)


def cell_text(cell: Optional[GridCell]) -> str:
    return clean_text(cell.source.get_text()) if cell else ""


def find_header_row_index(grid: TableGrid, max_scan: int = 5, min_score: int = 5) -> Optional[int]:
    """
    Finds the row listing the calendar days.

    A row scores one point each time a parsed day label differs from the
    previous parsed label, so a label spanning several columns counts once.

    Args:
        grid: The normalized table.
        max_scan: Number of leading rows to inspect.
        min_score: Minimum distinct-day score for a row to qualify.

    Returns:
        Index of the best scoring row, or None if no row reaches `min_score`.
    """
    best_index: Optional[int] = None
    best_score = 0

    for row_index in range(min(max_scan, grid.height)):
        score = 0
        last_day: Optional[str] = None
        for cell in grid.row(row_index):
            parsed = parse_day_label(cell_text(cell))
            if not parsed:
                continue
            if parsed[0] != last_day:
                score += 1
                last_day = parsed[0]
        if score > best_score:
            best_score = score
            best_index = row_index

    if best_index is None or best_score < min_score:
        return None
    return best_index


def get_day_ranges_from_grid(grid: TableGrid, header_row_index: int) -> List[DayRange]:
    """
    Groups header columns into one DayRange per labelled day.

    A range covers its own header cell's columns plus any following columns
    that are empty or unlabelled, up to the next labelled cell.
    """
    header_row = grid.row(header_row_index)
    ranges: List[DayRange] = []
    col = 0

    while col < len(header_row):
        cell = header_row[col]
        parsed = parse_day_label(cell_text(cell)) if cell else None
        if not parsed:
            col += 1
            continue

        start = col
        span = 1
        while start + span < len(header_row) and header_row[start + span] is not None \
                and header_row[start + span].source is cell.source:
            span += 1
        while start + span < len(header_row):
            filler = header_row[start + span]
            if filler is not None and parse_day_label(cell_text(filler)):
                break
            span += 1

        day, weekday = parsed
        ranges.append(DayRange(day=day, weekday=weekday, start=start, span=span))
        col = start + span

    return ranges


def locate_header(grid: TableGrid, max_scan: int = 5, min_days: int = 5) -> Optional[Tuple[int, List[DayRange]]]:
    """
    Locates the header row and its day ranges.

    Returns:
        (header row index, ranges), or None when no header is found or the
        table lists fewer than `min_days` days (a non-timetable table).
    """
    header_index = find_header_row_index(grid, max_scan, min_days)
    if header_index is None:
        return None
    ranges = get_day_ranges_from_grid(grid, header_index)
    if len(ranges) < min_days:
        log.debug(f"Header row {header_index} has only {len(ranges)} day ranges, table rejected")
        return None
    return header_index, ranges


def get_day_ranges(grid: TableGrid, max_scan: int = 5, min_days: int = 5) -> List[DayRange]:
    located = locate_header(grid, max_scan, min_days)
    return located[1] if located else []
