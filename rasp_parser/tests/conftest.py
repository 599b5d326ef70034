from datetime import date

import pytest

from rasp_parser.core.config import ParserConfig
from rasp_parser.tests.pages import TODAY


@pytest.fixture
def frozen_today(mocker):
    """Returns a function that pins date_utils.today() to the given date."""
    def _freeze(value: date = TODAY) -> date:
        mocker.patch("rasp_parser.core.date_utils.today", return_value=value)
        return value
    return _freeze


@pytest.fixture
def parser_config(tmp_path) -> ParserConfig:
    config = ParserConfig(cache_dir=str(tmp_path / "cache"))
    config.endpoints.timetable_group = "https://college.test/rasp/groups/"
    config.endpoints.timetable_teacher = "https://college.test/rasp/teachers/"
    config.v2.raw_html.dir = str(tmp_path / "raw")
    config.v2.metrics.dir = str(tmp_path / "metrics")
    return config
