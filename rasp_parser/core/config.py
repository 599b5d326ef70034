# rasp_parser/core/config.py
import json
import logging
import os
from pathlib import Path
from typing import List, Literal, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .constants import DEFAULT_CYCLE_TIMEOUT, DEFAULT_DOUBLE_LESSON_TYPE, DEFAULT_HEADERS

log = logging.getLogger(__name__)


class Endpoints(BaseModel):
    timetable_group: str = "https://example-college.ru/rasp/groups/"
    timetable_teacher: str = "https://example-college.ru/rasp/teachers/"
    team: List[str] = Field(default_factory=list)


class UpdateInterval(BaseModel):
    """Poll delays in seconds."""
    default: float = 600
    activity: float = 120
    error: float = 60
    teams: float = 86400
    # Local hours [start, end) during which the `activity` interval applies
    activity_hours: Tuple[int, int] = (7, 20)


class FetchRetry(BaseModel):
    count: int = 3
    # Fixed pause between attempts, seconds
    backoff: float = 1.0
    status_codes: List[int] = Field(default_factory=lambda: [408, 425, 429, 500, 502, 503, 504])
    # httpx transport exception class names
    error_codes: List[str] = Field(
        default_factory=lambda: ["ConnectError", "ConnectTimeout", "ReadTimeout", "ReadError", "RemoteProtocolError"]
    )

    @field_validator("count")
    @classmethod
    def validate_count(cls, v):
        if v < 1:
            raise ValueError("Retry count must be at least 1")
        return v


class RawHtmlConfig(BaseModel):
    enabled: bool = False
    dir: str = "cache/raw"
    max_days: int = 7
    replay_path: Optional[str] = None
    diff_max_lines: int = 200
    store_daily: bool = True


class QuarantineConfig(BaseModel):
    enabled: bool = False
    min_lessons: int = 1


class MetricsConfig(BaseModel):
    enabled: bool = False
    dir: str = "cache/metrics"


class V2Config(BaseModel):
    enabled: bool = True
    fallback_to_v1: bool = True
    week_policy: Literal["preferCurrent", "current", "closest"] = "preferCurrent"
    allow_two_tables: bool = True
    strict: bool = False
    diff_log: bool = False
    diff_log_limit: int = 20
    header_scan_rows: int = 5
    min_days_in_table: int = 5
    max_lessons_per_day: int = 10
    validation_sample: int = 10
    hash_mode: Literal["content", "tables"] = "content"
    double_lesson_type: str = DEFAULT_DOUBLE_LESSON_TYPE
    sunday_hold_current: bool = True
    preserve_current_week: bool = True
    week_jump_threshold: int = 2
    fetch_retry: FetchRetry = Field(default_factory=FetchRetry)
    raw_html: RawHtmlConfig = Field(default_factory=RawHtmlConfig)
    quarantine: QuarantineConfig = Field(default_factory=QuarantineConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


class ParserConfig(BaseModel):
    """Everything the parser service reads at startup."""
    enabled: bool = True
    sync_mode: bool = False
    local_mode: bool = False
    ignore_hash: bool = False
    cache_dir: str = "cache"
    cycle_timeout: float = DEFAULT_CYCLE_TIMEOUT
    user_agent: str = DEFAULT_HEADERS["User-Agent"]
    log_level: str = "INFO"
    endpoints: Endpoints = Field(default_factory=Endpoints)
    update_interval: UpdateInterval = Field(default_factory=UpdateInterval)
    v2: V2Config = Field(default_factory=V2Config)


def _env_bool(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: Optional[str] = None) -> ParserConfig:
    """
    Builds the ParserConfig from an optional JSON file and the environment.

    `.env` is loaded first. The JSON file is `path`, else $RASP_CONFIG_PATH,
    else ./config.json when it exists. RASP_* environment variables override
    the file.

    Raises:
        pydantic.ValidationError: If the resulting configuration is invalid.
    """
    load_dotenv()

    config_path = Path(path or os.getenv("RASP_CONFIG_PATH", "config.json"))
    data = {}
    if config_path.is_file():
        with config_path.open(encoding="utf-8") as f:
            data = json.load(f)
        log.info(f"Loaded parser config from {config_path}")
    else:
        log.info(f"No config file at {config_path}, using defaults")

    for key, env_name in (("enabled", "RASP_PARSER_ENABLED"), ("local_mode", "RASP_LOCAL_MODE"),
                          ("sync_mode", "RASP_SYNC_MODE")):
        flag = _env_bool(env_name)
        if flag is not None:
            data[key] = flag

    endpoints = data.setdefault("endpoints", {})
    if os.getenv("RASP_GROUP_URL"):
        endpoints["timetable_group"] = os.getenv("RASP_GROUP_URL")
    if os.getenv("RASP_TEACHER_URL"):
        endpoints["timetable_teacher"] = os.getenv("RASP_TEACHER_URL")
    if os.getenv("RASP_TEAM_URLS"):
        endpoints["team"] = [url.strip() for url in os.getenv("RASP_TEAM_URLS").split(",") if url.strip()]
    if os.getenv("RASP_CACHE_DIR"):
        data["cache_dir"] = os.getenv("RASP_CACHE_DIR")
    if os.getenv("RASP_LOG_LEVEL"):
        data["log_level"] = os.getenv("RASP_LOG_LEVEL")

    return ParserConfig.model_validate(data)
