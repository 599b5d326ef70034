# rasp_parser/core/constants.py
import re

# --- HTTP Headers ---
# Default headers for page requests, mimicking a browser
DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "ru-RU,ru;q=0.9",
}

# --- Page Structure ---
# Content containers tried in order; the first selector that matches wins.
# For ".entry .content" the last match is used (the page may repeat the block).
CONTENT_SELECTORS = [
    ".entry .content",
    "#main-p .content",
    ".common-page-left-block .content",
    ".common-page-left-block",
]

# Team (staff roster) page selectors
TEAM_CARD_SELECTOR = ".entry.employees-list .employee-card h5.employee-card-title"
TEAM_FALLBACK_SELECTOR = ".main.container #main-p > div.item .content h3"

# Headings that label a timetable table
HEADING_TAGS = ("h1", "h2", "h3", "h4")
GROUP_HEADING_KEYWORD = "группа"
TEACHER_HEADING_KEYWORD = "преподаватель"
# How many previous siblings are inspected when looking for a table heading
HEADING_SEARCH_DEPTH = 12

# Block-level elements that terminate a text line inside a cell
BLOCK_TAGS = frozenset({"p", "div", "tr", "li"})

# --- Parsing Constants ---
WEEKDAYS_RU = [
    "понедельник",
    "вторник",
    "среда",
    "четверг",
    "пятница",
    "суббота",
    "воскресенье",
]

DATE_RE = re.compile(r"(\d{1,2}\.\d{1,2}\.\d{2,4})")
LESSON_NUMBER_RE = re.compile(r"\d+")
TEACHER_LINE_RE = re.compile(r"^[A-ZА-ЯЁ][a-zа-яё-]+\s+[A-ZА-ЯЁ]\.\s*[A-ZА-ЯЁ]?\.?$")
DASHES_RE = re.compile(r"^-(\s*-)*$")

# Comment attached to a collapsed double lesson
DOUBLE_LESSON_COMMENT = "2 часа"
DEFAULT_DOUBLE_LESSON_TYPE = "ф-в"

# --- Orchestrator ---
LOG_LIMIT = 10
LOG_COUNT_SEND = 3
DEFAULT_CYCLE_TIMEOUT = 60.0

# Cache file names per entity family
CACHE_FILES = {
    "groups": "groups.json",
    "teachers": "teachers.json",
    "team": "team.json",
}
