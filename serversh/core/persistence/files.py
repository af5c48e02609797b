"""
File helpers shared by the config and state stores.

Writes are atomic (write to temp file, then rename) to prevent
corruption if the process crashes mid-write. Backups are timestamped
siblings of the original: ``state.json.backup.20240101_120000_000123``.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

BACKUP_MARKER = ".backup."


def atomic_write_text(path: Path, content: str, mode: int = 0o644) -> None:
    """Write ``content`` to ``path`` atomically.

    Uses write-to-temp-then-rename in the same directory, so readers see
    either the old file or the new one, never a partial write.

    Args:
        path: Target file.
        content: Full text to write.
        mode: Permission bits for the new file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}_",
        suffix=".tmp",
    )
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def backup_file(path: Path, keep: int | None = None) -> Path | None:
    """Copy ``path`` to a timestamped backup next to it.

    Args:
        path: File to back up. Missing files are ignored.
        keep: If given, prune so at most this many backups remain.

    Returns:
        Path of the backup, or None if there was nothing to back up.
    """
    if not path.is_file():
        return None

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    backup = path.with_name(f"{path.name}{BACKUP_MARKER}{stamp}")
    shutil.copy2(path, backup)
    logger.debug("Backed up %s -> %s", path, backup.name)

    if keep is not None:
        prune_backups(path, keep)
    return backup


def list_backups(path: Path) -> list[Path]:
    """Backups of ``path``, oldest first."""
    return sorted(path.parent.glob(f"{path.name}{BACKUP_MARKER}*"))


def prune_backups(path: Path, keep: int) -> int:
    """Delete all but the newest ``keep`` backups of ``path``."""
    backups = list_backups(path)
    stale = backups[:-keep] if keep > 0 else backups
    for old in stale:
        old.unlink(missing_ok=True)
    return len(stale)


def cleanup_directory(directory: Path, backup_days: int, tmp_days: int = 1) -> int:
    """Remove old backups and leftover temp files from ``directory``.

    Args:
        directory: Directory to sweep (not recursive).
        backup_days: Age threshold for ``*.backup.*`` files.
        tmp_days: Age threshold for ``*.tmp`` files.

    Returns:
        Number of files removed.
    """
    if not directory.is_dir():
        return 0

    now = time.time()
    removed = 0
    for candidate in directory.iterdir():
        if not candidate.is_file():
            continue
        if BACKUP_MARKER in candidate.name:
            limit = backup_days
        elif candidate.name.endswith(".tmp"):
            limit = tmp_days
        else:
            continue
        age_days = (now - candidate.stat().st_mtime) / 86400
        if age_days > limit:
            candidate.unlink(missing_ok=True)
            removed += 1

    if removed:
        logger.info("Removed %d old file(s) from %s", removed, directory)
    return removed
