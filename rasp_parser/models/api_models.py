# rasp_parser/models/api_models.py
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FamilyHealth(BaseModel):
    update: Optional[float] = None
    changed: Optional[float] = None
    hash: Optional[str] = None


class ParserHealth(BaseModel):
    ok: bool
    last_success_update: Optional[float] = Field(None, alias="lastSuccessUpdate")
    groups: FamilyHealth
    teachers: FamilyHealth
    metrics: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "ok": True,
                "lastSuccessUpdate": 1757400000.0,
                "groups": {"update": 1757400000.0, "changed": 1757390000.0, "hash": "q1w2e3"},
                "teachers": {"update": 1757400000.0, "changed": 1757390000.0, "hash": "r4t5y6"},
                "metrics": {},
            }
        },
    )


class ForceParseResponse(BaseModel):
    scheduled: bool
    clear_keys: bool = Field(..., alias="clearKeys")

    model_config = ConfigDict(populate_by_name=True)


class LogLine(BaseModel):
    date: float
    error: bool
    message: str


class LogsResponse(BaseModel):
    logs: List[LogLine]
