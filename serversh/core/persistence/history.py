"""
Run history — append-only ledger of finished runs.

Every install run appends one NDJSON (newline-delimited JSON) line to
``history.ndjson`` next to the state document. Entries are never
modified or deleted; ``status`` shows the most recent ones.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from serversh.core.constants import HISTORY_FILENAME

logger = logging.getLogger(__name__)


class RunRecord(BaseModel):
    """A single finished run."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    install_id: str = ""
    status: str = ""               # completed, failed, stopped
    mode: str = "sequential"       # sequential, parallel

    modules_requested: list[str] = Field(default_factory=list)
    modules_total: int = 0
    modules_completed: int = 0
    modules_failed: int = 0
    modules_skipped: int = 0
    duration_ms: int = 0

    errors: list[str] = Field(default_factory=list)


class RunHistory:
    """Append-only run ledger.

    Each call to write() appends a single JSON line to the ledger file.
    The file is created if it doesn't exist.
    """

    def __init__(self, path: Path | None = None, state_dir: Path | None = None):
        if path is not None:
            self._path = Path(path)
        elif state_dir is not None:
            self._path = Path(state_dir) / HISTORY_FILENAME
        else:
            self._path = Path(HISTORY_FILENAME)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, record: RunRecord) -> None:
        """Append a record to the ledger.

        A failed append is logged, not raised: the run outcome is
        already recorded in the state document.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n"

        try:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Run recorded: %s (%s)", record.install_id, record.status)
        except OSError as e:
            logger.error("Failed to write run history: %s", e)

    def read_all(self) -> list[RunRecord]:
        """All records, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        records = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(RunRecord.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("Skipping corrupt history entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read run history: %s", e)

        return records

    def read_recent(self, n: int = 10) -> list[RunRecord]:
        return self.read_all()[-n:]

    def entry_count(self) -> int:
        if not self._path.is_file():
            return 0
        try:
            with self._path.open("r", encoding="utf-8") as f:
                return sum(1 for line in f if line.strip())
        except OSError:
            return 0
