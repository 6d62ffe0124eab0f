# src/taskpulse/core/owner_notes.py

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from ..tasks.task_models import now_ms

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")

CONTEXT_FILE = "CONTEXT.md"


class OwnerNotes:
    """
    Plain-file notes for one owner under <root>/<owner_id>/:
    - <YYYY-MM-DD>.md  daily log, one "[HH:MM:SS] entry" line per !log
    - CONTEXT.md       the owner's standing context, replaced by !context set
    """

    def __init__(self, root: str | Path, owner_id: str, *, timezone: str = "UTC") -> None:
        safe = _UNSAFE.sub("_", owner_id).strip("._") or "owner"
        self.dir = Path(root) / safe
        self._tz = ZoneInfo(timezone)

    def _local(self, now: int | None) -> datetime:
        ms = now_ms() if now is None else int(now)
        return datetime.fromtimestamp(ms / 1000, self._tz)

    def log_path(self, now: int | None = None) -> Path:
        return self.dir / f"{self._local(now).date().isoformat()}.md"

    def append_log(self, entry: str, *, now: int | None = None) -> Path:
        path = self.log_path(now)
        path.parent.mkdir(parents=True, exist_ok=True)
        stamp = self._local(now).strftime("%H:%M:%S")
        with path.open("a", encoding="utf-8") as f:
            f.write(f"[{stamp}] {entry.strip()}\n")
        logger.debug("Owner log appended path=%s", path)
        return path

    def read_log(self, *, now: int | None = None, tail_chars: int = 1900) -> str:
        """Today's log, keeping only the last `tail_chars` characters."""
        path = self.log_path(now)
        if not path.exists():
            return ""
        text = path.read_text("utf-8")
        return text[-tail_chars:] if tail_chars > 0 else text

    def read_context(self) -> str:
        path = self.dir / CONTEXT_FILE
        if not path.exists():
            return ""
        return path.read_text("utf-8").strip()

    def write_context(self, text: str) -> None:
        self.dir.mkdir(parents=True, exist_ok=True)
        (self.dir / CONTEXT_FILE).write_text(text.strip() + "\n", encoding="utf-8")
        logger.info("Owner context updated dir=%s len=%d", self.dir, len(text))
