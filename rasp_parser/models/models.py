# rasp_parser/models/models.py
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..core.date_utils import DayIndex, StringDate, WeekIndex


class GroupLessonEntry(BaseModel):
    """One lesson as seen from a student group's timetable."""
    subgroup: Optional[int] = None
    subject: str
    type: Optional[str] = None
    teacher: Optional[str] = None
    cabinet: Optional[str] = None
    comment: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "subgroup": 1,
                "subject": "Математика",
                "type": "лек",
                "teacher": "Иванов И.И.",
                "cabinet": "305",
                "comment": None,
            }
        }
    )


class TeacherLessonEntry(BaseModel):
    """One lesson as seen from a teacher's timetable."""
    subject: str
    type: Optional[str] = None
    subgroup: Optional[int] = None
    group: str
    cabinet: Optional[str] = None
    comment: Optional[str] = None


# A group slot holds one entry, parallel subgroup entries, or nothing
GroupLessonSlot = Union[GroupLessonEntry, List[GroupLessonEntry], None]
TeacherLessonSlot = Optional[TeacherLessonEntry]


class _DayBase(BaseModel):
    date: str  # canonical dd.mm.yyyy

    def day_index(self) -> DayIndex:
        return StringDate(self.date).to_day_index()

    def week_index(self) -> WeekIndex:
        return WeekIndex.from_string(self.date)

    def is_sunday(self) -> bool:
        return StringDate(self.date).is_sunday()


class GroupDay(_DayBase):
    # Index i holds lesson number i + 1
    lessons: List[GroupLessonSlot] = Field(default_factory=list)


class TeacherDay(_DayBase):
    lessons: List[TeacherLessonSlot] = Field(default_factory=list)


Day = Union[GroupDay, TeacherDay]


class Group(BaseModel):
    group: str  # label as printed on the page, e.g. "3ТО-1*"
    days: List[GroupDay] = Field(default_factory=list)
    last_noticed_day: Optional[int] = Field(None, alias="lastNoticedDay")

    model_config = ConfigDict(populate_by_name=True)


class Teacher(BaseModel):
    teacher: str
    days: List[TeacherDay] = Field(default_factory=list)
    last_noticed_day: Optional[int] = Field(None, alias="lastNoticedDay")

    model_config = ConfigDict(populate_by_name=True)


Entity = Union[Group, Teacher]


class _EntryCacheBase(BaseModel):
    content_hash: Optional[str] = Field(None, alias="contentHash")
    last_update: Optional[float] = Field(None, alias="lastUpdate")  # unix seconds
    last_changed: Optional[float] = Field(None, alias="lastChanged")
    last_week_index: Optional[int] = Field(None, alias="lastWeekIndex")

    model_config = ConfigDict(populate_by_name=True)


class GroupsCache(_EntryCacheBase):
    timetable: Dict[str, Group] = Field(default_factory=dict)


class TeachersCache(_EntryCacheBase):
    timetable: Dict[str, Teacher] = Field(default_factory=dict)


EntryCache = Union[GroupsCache, TeachersCache]


class TeamCache(BaseModel):
    """Staff roster: short name ("Иванов И. И.") to full name."""
    names: Dict[str, str] = Field(default_factory=dict)
    hashes: Dict[str, str] = Field(default_factory=dict)  # page url -> content hash
    last_update: Optional[float] = Field(None, alias="lastUpdate")
    last_changed: Optional[float] = Field(None, alias="lastChanged")

    model_config = ConfigDict(populate_by_name=True)
