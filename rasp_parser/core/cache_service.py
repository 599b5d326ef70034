# rasp_parser/core/cache_service.py
import json
import logging
from pathlib import Path
from typing import Optional, Union

import aiofiles
from pydantic import BaseModel, ValidationError

from .constants import CACHE_FILES
from .parsers import Family
from ..models.models import EntryCache, GroupsCache, TeachersCache, TeamCache

log = logging.getLogger(__name__)


class CacheStore:
    """
    Persistent parser state: one JSON document per family.

    Created once at startup, loaded explicitly with `load()` and written in
    full with `save()` after every parse cycle.
    """

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(cache_dir)
        self.groups = GroupsCache()
        self.teachers = TeachersCache()
        self.team = TeamCache()
        # Whether the last cycle finished without error
        self.success_update = False

    def entry(self, family: Family) -> EntryCache:
        return self.groups if family == Family.GROUPS else self.teachers

    def _path(self, name: str) -> Path:
        return self.cache_dir / CACHE_FILES[name]

    def _load_model(self, name: str, model: type) -> Optional[BaseModel]:
        path = self._path(name)
        if not path.is_file():
            return None
        try:
            with path.open(encoding="utf-8") as f:
                return model.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            # A broken file would fail every start; start over from an empty cache
            log.error(f"Cache file {path} is corrupted ({type(e).__name__}), removing it")
            path.unlink()
            return None

    def load(self) -> "CacheStore":
        """Reads every cache file that exists. Corrupted files are deleted."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.groups = self._load_model("groups", GroupsCache) or GroupsCache()
        self.teachers = self._load_model("teachers", TeachersCache) or TeachersCache()
        self.team = self._load_model("team", TeamCache) or TeamCache()
        log.info(
            f"Cache loaded: {len(self.groups.timetable)} groups, {len(self.teachers.timetable)} teachers, "
            f"{len(self.team.names)} team members"
        )
        return self

    async def save(self) -> None:
        """Writes all cache files."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        for name, model in (("groups", self.groups), ("teachers", self.teachers), ("team", self.team)):
            text = json.dumps(model.model_dump(mode="json", by_alias=True), ensure_ascii=False, indent=4)
            async with aiofiles.open(self._path(name), "w", encoding="utf-8") as f:
                await f.write(text)
        log.debug(f"Cache saved to {self.cache_dir}")

    def mark_noticed(self, family: Family, key: str, day_index: int) -> bool:
        """Records that notifications for `day_index` were sent for an entity."""
        entity = self.entry(family).timetable.get(key)
        if entity is None:
            return False
        entity.last_noticed_day = day_index
        return True
