# rasp_parser/core/snapshot.py
import difflib
import logging
import shutil
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Literal, Optional

import aiofiles

from .config import RawHtmlConfig

log = logging.getLogger(__name__)

SnapshotStatus = Literal["good", "bad"]


def line_diff(old: str, new: str, max_lines: int) -> str:
    """
    Line level diff of two documents.

    Added lines are prefixed with "+ ", removed lines with "- ". Each side is
    cut after `max_lines` lines.
    """
    old_lines = old.splitlines()
    new_lines = new.splitlines()
    added: List[str] = []
    removed: List[str] = []
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("replace", "delete"):
            removed.extend(old_lines[i1:i2])
        if tag in ("replace", "insert"):
            added.extend(new_lines[j1:j2])

    out = [f"added: {len(added)}, removed: {len(removed)}"]
    out.extend(f"+ {line}" for line in added[:max_lines])
    if len(added) > max_lines:
        out.append(f"+ ... {len(added) - max_lines} more")
    out.extend(f"- {line}" for line in removed[:max_lines])
    if len(removed) > max_lines:
        out.append(f"- ... {len(removed) - max_lines} more")
    return "\n".join(out) + "\n"


class RawHtmlStore:
    """
    Keeps raw copies of fetched pages for later inspection.

    Layout under `<dir>/<kind>/`:
        YYYY-MM-DD/HHMMSS_<status>.html   (or YYYYMMDD_HHMMSS_<status>.html when not daily)
        last_<status>.html                the latest page of that status
        diff_YYYYMMDD_HHMMSS_<status>.txt diff against the previous last_<status>.html
    """

    def __init__(self, config: RawHtmlConfig, kind: str):
        self.config = config
        self.kind = kind
        self.base = Path(config.dir) / kind

    async def _read(self, path: Path) -> Optional[str]:
        if not path.is_file():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()

    async def _write(self, path: Path, text: str) -> None:
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(text)

    async def save(self, html: str, status: SnapshotStatus, now: Optional[datetime] = None) -> Optional[Path]:
        """
        Stores a snapshot and, when it differs from the previous one of the
        same status, a diff file next to it.

        Returns:
            Path of the stored snapshot, or None when snapshots are disabled.
        """
        if not self.config.enabled:
            return None

        now = now or datetime.now()
        if self.config.store_daily:
            folder = self.base / now.strftime("%Y-%m-%d")
            name = f"{now:%H%M%S}_{status}.html"
        else:
            folder = self.base
            name = f"{now:%Y%m%d_%H%M%S}_{status}.html"
        folder.mkdir(parents=True, exist_ok=True)

        path = folder / name
        await self._write(path, html)

        last_path = self.base / f"last_{status}.html"
        previous = await self._read(last_path)
        if previous is not None and previous != html:
            diff_path = self.base / f"diff_{now:%Y%m%d_%H%M%S}_{status}.txt"
            await self._write(diff_path, line_diff(previous, html, self.config.diff_max_lines))
            log.info(f"Raw HTML of '{self.kind}' changed, diff saved to {diff_path}")
        await self._write(last_path, html)
        return path

    def prune(self, today: Optional[date] = None) -> List[Path]:
        """Removes daily folders older than `max_days`. Returns the removed folders."""
        if not self.config.enabled or not self.base.is_dir():
            return []

        today = today or date.today()
        cutoff = today - timedelta(days=self.config.max_days)
        removed: List[Path] = []
        for folder in self.base.iterdir():
            if not folder.is_dir():
                continue
            try:
                folder_date = datetime.strptime(folder.name, "%Y-%m-%d").date()
            except ValueError:
                continue
            if folder_date < cutoff:
                shutil.rmtree(folder)
                removed.append(folder)
        if removed:
            log.info(f"Pruned {len(removed)} raw HTML folders of '{self.kind}'")
        return removed
