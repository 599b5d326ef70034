# rasp_parser/core/page.py
import base64
import hashlib
import logging
from typing import List, Literal, Optional

from bs4 import BeautifulSoup, Tag

from .constants import CONTENT_SELECTORS, HEADING_SEARCH_DEPTH, HEADING_TAGS
from .errors import StructureError
from .text import clean_text

log = logging.getLogger(__name__)

HashMode = Literal["content", "tables"]


def _digest(text: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class TimetablePage:
    """
    A fetched page reduced to its main content container.

    Raises:
        StructureError: If none of the known content containers is present.
    """

    def __init__(self, html: str, url: Optional[str] = None):
        self.url = url
        self.soup = BeautifulSoup(html, "lxml")
        self.content = self._select_content()

    def _select_content(self) -> Tag:
        for selector in CONTENT_SELECTORS:
            found = self.soup.select(selector)
            if found:
                # Some layouts repeat the entry block; the last one holds the data
                return found[-1]
        raise StructureError("cannot get page content", {"stage": "content", "url": self.url})

    @property
    def tables(self) -> List[Tag]:
        return self.content.find_all("table")

    def content_hash(self, mode: HashMode = "content") -> str:
        """
        Hash of the content container (`content`) or of its tables only (`tables`),
        as unpadded urlsafe base64 of SHA-256.
        """
        if mode == "tables":
            return _digest("\n".join(str(table) for table in self.tables))
        return _digest(self.content.decode_contents())

    def check_structure(self) -> bool:
        """Logs an error when the page has tables but no <h2> headings."""
        tables = self.tables
        headings = self.content.find_all("h2")
        if tables and not headings:
            log.error(f"Page structure changed: {len(tables)} tables without h2 headings ({self.url})")
            return False
        return True


def find_table_heading(table: Tag, keyword: str, depth: int = HEADING_SEARCH_DEPTH) -> Optional[str]:
    """
    Text of the closest preceding heading that mentions `keyword`.

    Looks at up to `depth` previous sibling elements and stops at the
    previous table, so a heading is never shared between two tables.
    """
    seen = 0
    for sibling in table.find_previous_siblings():
        if seen >= depth or sibling.name == "table":
            break
        seen += 1
        if sibling.name in HEADING_TAGS:
            text = clean_text(sibling.get_text())
            if keyword in text.lower():
                return text
    return None


def label_after_dash(heading: str) -> Optional[str]:
    """Takes the label out of a heading like 'Группа - 3ТО-1*' (gives '3ТО-1*')."""
    separator = " - " if " - " in heading else "-"
    if separator not in heading:
        return None
    label = clean_text(heading.split(separator, 1)[1])
    return label or None
