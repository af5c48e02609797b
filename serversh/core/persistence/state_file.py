"""
State file persistence — locked, atomic read/write for the StateDocument.

The document is stored as JSON (``state.json`` by default). Every
mutation follows the same discipline:

    lock → reload from disk → modify → back up old file → atomic write → unlock

so that concurrent processes sharing the file never interleave partial
updates. Malformed documents fail with StateError; they are never
silently replaced with a fresh one.
"""

from __future__ import annotations

import getpass
import json
import logging
import secrets
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from serversh.core.constants import (
    MAX_STATE_BACKUPS,
    MAX_STATE_SIZE,
    REQUIRED_STATE_FIELDS,
    TIMEOUT_STATE_OPERATION,
)
from serversh.core.errors import PermissionDeniedError, StateError
from serversh.core.models.state import (
    Checkpoint,
    CheckpointType,
    ModuleRunState,
    ModuleStatus,
    RunError,
    RunMetadata,
    StateDocument,
    SystemInfo,
    can_transition,
)
from serversh.core.persistence.files import atomic_write_text, backup_file, cleanup_directory
from serversh.core.persistence.lock import StateLock

logger = logging.getLogger(__name__)


def _new_id(prefix: str) -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{stamp}_{secrets.token_hex(4)}"


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class StateStore:
    """Owner of the durable state document.

    Args:
        path: Location of the JSON document.
        lock_timeout: Seconds to wait for the state lock.
        module_filter: Optional predicate; module states can only be
            written for names it accepts (the engine passes registry
            membership).
    """

    def __init__(
        self,
        path: Path,
        lock_timeout: float = TIMEOUT_STATE_OPERATION,
        module_filter: Callable[[str], bool] | None = None,
    ):
        self._path = Path(path)
        self._lock = StateLock(self._path.with_name(self._path.name + ".lock"), lock_timeout)
        self._document: StateDocument | None = None
        self.module_filter = module_filter

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock(self) -> StateLock:
        return self._lock

    @property
    def document(self) -> StateDocument | None:
        """Last document loaded or saved by this store (may be stale)."""
        return self._document

    # ── Lifecycle ───────────────────────────────────────────────

    def init(self, system: SystemInfo | None = None) -> StateDocument:
        """Load the state document, creating a fresh one if absent."""
        with self._lock:
            if self._path.is_file():
                document = self.load()
                logger.info("State loaded from %s (status=%s)", self._path, document.status)
                return document

            logger.info("Creating new state file: %s", self._path)
            document = StateDocument(
                system=system or SystemInfo(),
                metadata=RunMetadata(install_id=_new_id("install"), started_by=_current_user()),
            )
            self.save(document)
            return document

    def load(self) -> StateDocument:
        """Read and validate the state document from disk.

        Raises:
            StateError: If the file is missing, oversized, not JSON, or
                lacks required fields.
        """
        if not self._path.is_file():
            raise StateError(f"State file not found: {self._path}")

        try:
            size = self._path.stat().st_size
            if size > MAX_STATE_SIZE:
                raise StateError(f"State file too large: {size} bytes (max: {MAX_STATE_SIZE})")
            raw = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Cannot read state file {self._path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise StateError(f"State file {self._path} does not contain an object")
        missing = [f for f in REQUIRED_STATE_FIELDS if f not in data]
        if missing:
            raise StateError(f"State file {self._path} missing field(s): {', '.join(missing)}")

        try:
            document = StateDocument.model_validate(data)
        except ValidationError as e:
            raise StateError(f"Malformed state file {self._path}: {e}") from e

        self._document = document
        logger.debug("Loaded state from %s (updated=%s)", self._path, document.updated)
        return document

    def save(self, document: StateDocument) -> None:
        """Persist ``document`` atomically, backing up the previous file.

        Raises:
            StateError: If the serialized document exceeds the size limit
                or cannot be written.
        """
        with self._lock:
            document.touch()
            content = json.dumps(document.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
            if len(content.encode("utf-8")) > MAX_STATE_SIZE:
                raise StateError(
                    f"State document too large to save ({len(content)} bytes, max: {MAX_STATE_SIZE})"
                )

            try:
                backup_file(self._path, keep=MAX_STATE_BACKUPS)
                atomic_write_text(self._path, content)
            except PermissionError as e:
                raise PermissionDeniedError(f"Cannot write state file {self._path}: {e}") from e
            except OSError as e:
                logger.error("Failed to save state to %s: %s", self._path, e)
                raise StateError(f"Failed to write state file {self._path}: {e}") from e

            self._document = document
            logger.debug("State saved to %s", self._path)

    @contextmanager
    def update(self) -> Iterator[StateDocument]:
        """Locked read-modify-write of the document.

        Usage::

            with store.update() as doc:
                doc.current_step += 1

        The document is saved only if the block exits without an exception.
        """
        with self._lock:
            document = self.load()
            yield document
            self.save(document)

    # ── Generic access ──────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """Read a value by dotted path, e.g. ``"metadata.install_id"``."""
        node: Any = self.load().model_dump(mode="json")
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a value by dotted path and persist it.

        Raises:
            StateError: If the result is not a valid state document.
        """
        parts = key.split(".")
        with self._lock:
            data = self.load().model_dump(mode="json")
            node = data
            for part in parts[:-1]:
                child = node.setdefault(part, {})
                if not isinstance(child, dict):
                    raise StateError(f"Cannot set {key}: '{part}' is not an object")
                node = child
            node[parts[-1]] = value

            try:
                document = StateDocument.model_validate(data)
            except ValidationError as e:
                raise StateError(f"Invalid value for state key {key}: {e}") from e
            self.save(document)

    # ── Module states ───────────────────────────────────────────

    def set_module_state(self, name: str, status: ModuleStatus, data: Any = None) -> None:
        """Record a module's lifecycle status.

        Raises:
            StateError: If the name is not accepted by ``module_filter``
                or the transition is not allowed.
        """
        status = ModuleStatus(status)
        if self.module_filter is not None and not self.module_filter(name):
            raise StateError(f"Cannot record state for unregistered module: {name}")

        with self.update() as document:
            current = document.module_status(name)
            if not can_transition(current, status):
                raise StateError(f"Illegal state transition for {name}: {current} -> {status}")
            document.set_module_state(name, status, data)
        logger.debug("Module state: %s -> %s", name, status)

    def get_module_state(self, name: str) -> ModuleStatus | None:
        return self.load().module_status(name)

    def list_modules(self) -> dict[str, ModuleRunState]:
        return dict(self.load().modules)

    def record_error(self, message: str, module: str | None = None) -> None:
        with self.update() as document:
            document.errors.append(RunError(message=message, module=module))

    # ── Checkpoints ─────────────────────────────────────────────

    def create_checkpoint(
        self,
        description: str,
        checkpoint_type: CheckpointType = CheckpointType.MANUAL,
    ) -> str:
        """Snapshot the current document and append it as a checkpoint.

        Returns:
            The new checkpoint id.
        """
        checkpoint_id = _new_id("checkpoint")
        logger.info("Creating checkpoint: %s - %s", checkpoint_id, description)

        with self.update() as document:
            snapshot = document.model_dump(mode="json")
            # Earlier checkpoints are referenced by id, not nested
            snapshot["checkpoints"] = [cp.id for cp in document.checkpoints]
            document.checkpoints.append(Checkpoint(
                id=checkpoint_id,
                type=CheckpointType(checkpoint_type),
                description=description,
                modules_snapshot={k: v.model_copy() for k, v in document.modules.items()},
                state_snapshot=snapshot,
            ))
            document.current_checkpoint = checkpoint_id

        logger.info("Checkpoint created: %s", checkpoint_id)
        return checkpoint_id

    def restore_checkpoint(self, checkpoint_id: str) -> StateDocument:
        """Overwrite the whole document with a checkpoint's snapshot.

        Only the tracked state is reverted; nothing on the host is undone.

        Raises:
            StateError: If the checkpoint does not exist or references a
                checkpoint that is no longer present.
        """
        logger.info("Restoring checkpoint: %s", checkpoint_id)
        with self._lock:
            current = self.load()
            checkpoint = current.find_checkpoint(checkpoint_id)
            if checkpoint is None:
                raise StateError(f"Checkpoint not found: {checkpoint_id}")

            data = dict(checkpoint.state_snapshot)
            expanded = []
            for ref in data.get("checkpoints", []):
                earlier = current.find_checkpoint(ref) if isinstance(ref, str) else None
                if earlier is None:
                    raise StateError(f"Checkpoint {checkpoint_id} references missing checkpoint {ref}")
                expanded.append(earlier.model_dump(mode="json"))
            data["checkpoints"] = expanded

            try:
                document = StateDocument.model_validate(data)
            except ValidationError as e:
                raise StateError(f"Checkpoint {checkpoint_id} has a malformed snapshot: {e}") from e
            self.save(document)

        logger.info("Checkpoint restored: %s", checkpoint_id)
        return document

    def list_checkpoints(self) -> list[Checkpoint]:
        return list(self.load().checkpoints)

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = self.load().find_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise StateError(f"Checkpoint not found: {checkpoint_id}")
        return checkpoint

    # ── Reporting / maintenance ─────────────────────────────────

    def summary(self) -> dict:
        document = self.load()
        return {
            "file": str(self._path),
            "version": document.version,
            "status": str(document.status),
            "progress": f"{document.current_step}/{document.total_steps}",
            "current_step": document.current_step,
            "total_steps": document.total_steps,
            "modules": len(document.modules),
            "checkpoints": len(document.checkpoints),
            "current_checkpoint": document.current_checkpoint,
            "errors": len(document.errors),
            "updated": document.updated,
        }

    def reset(self, system: SystemInfo | None = None) -> StateDocument:
        """Back up and delete the document, then create a fresh one."""
        logger.warning("Resetting state: %s", self._path)
        with self._lock:
            if self._path.is_file():
                backup_file(self._path, keep=MAX_STATE_BACKUPS)
                self._path.unlink()
            self._document = None
            return self.init(system)

    def export(self, path: Path | None = None) -> str:
        """Return the document as JSON text; optionally write it to ``path``."""
        content = json.dumps(self.load().model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
        if path is not None:
            atomic_write_text(Path(path), content)
            logger.info("State exported to %s", path)
        return content

    def cleanup(self, days: int = 30) -> int:
        """Remove state backups and temp files older than ``days``."""
        return cleanup_directory(self._path.parent, backup_days=days)
