# rasp_parser/core/team.py
import logging
import re
from typing import Dict, Optional

from bs4 import BeautifulSoup

from .constants import TEAM_CARD_SELECTOR, TEAM_FALLBACK_SELECTOR
from .text import clean_text

log = logging.getLogger(__name__)

FULL_NAME_RE = re.compile(r"^([А-ЯЁA-Z][а-яёa-z-]+)\s+([А-ЯЁA-Z])[а-яёa-z]*\s+([А-ЯЁA-Z])[а-яёa-z]*")


def short_name(full_name: str) -> Optional[str]:
    """'Иванов Иван Иванович' -> 'Иванов И. И.'; None for anything else."""
    match = FULL_NAME_RE.match(clean_text(full_name))
    if not match:
        return None
    surname, first, middle = match.groups()
    return f"{surname} {first}. {middle}."


def parse_team_html(html: str) -> Dict[str, str]:
    """
    Extracts the staff roster from a team page.

    Args:
        html: The team page.

    Returns:
        Mapping of short name ("Иванов И. И.") to full name. Empty when the
        page has neither the employee cards nor the fallback layout.
    """
    soup = BeautifulSoup(html, "lxml")
    titles = soup.select(TEAM_CARD_SELECTOR) or soup.select(TEAM_FALLBACK_SELECTOR)
    if not titles:
        log.warning("Team page has no employee entries")
        return {}

    names: Dict[str, str] = {}
    for title in titles:
        full_name = clean_text(title.get_text())
        short = short_name(full_name)
        if short:
            names[short] = full_name
        else:
            log.debug(f"Unrecognized employee name: '{full_name}'")
    return names
