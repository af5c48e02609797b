"""
Tests for logging setup and the run history ledger.
"""

import json
import logging
from pathlib import Path

import pytest

from serversh.core.observability.logging_config import level_from_config, setup_logging
from serversh.core.persistence.history import RunHistory, RunRecord


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLevels:
    @pytest.mark.parametrize("value,expected", [
        ("debug", "DEBUG"),
        ("INFO", "INFO"),
        ("warn", "WARNING"),
        ("error", "ERROR"),
        ("fatal", "CRITICAL"),
        (0, "DEBUG"),
        ("4", "CRITICAL"),
        ("loud", "WARNING"),
        (None, "WARNING"),
    ])
    def test_level_from_config(self, value, expected):
        assert level_from_config(value) == expected


class TestSetupLogging:
    def test_console_level(self):
        setup_logging("warn")
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1

    def test_debug_format_has_location(self):
        setup_logging("DEBUG")
        fmt = logging.getLogger().handlers[0].formatter._fmt
        assert "%(lineno)d" in fmt

    def test_file_handler(self, tmp_path: Path):
        log_file = tmp_path / "serversh.log"
        setup_logging("ERROR", log_file=str(log_file), log_file_level="DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG

        logging.getLogger("serversh.test").info("written to file only")
        for handler in root.handlers:
            handler.flush()
        assert "written to file only" in log_file.read_text()


class TestRunHistory:
    def test_append_and_read(self, tmp_path: Path):
        history = RunHistory(state_dir=tmp_path)
        history.write(RunRecord(install_id="i1", status="failed", modules_failed=1))
        history.write(RunRecord(install_id="i1", status="completed"))

        assert history.path == tmp_path / "history.ndjson"
        assert history.entry_count() == 2
        assert [r.status for r in history.read_all()] == ["failed", "completed"]
        assert [r.status for r in history.read_recent(1)] == ["completed"]

    def test_skips_corrupt_lines(self, tmp_path: Path):
        path = tmp_path / "history.ndjson"
        good = json.dumps(RunRecord(status="completed").model_dump(mode="json"))
        path.write_text(f"{good}\nnot json\n{{\"modules_total\": \"many\"}}\n{good}\n")
        assert len(RunHistory(path).read_all()) == 2

    def test_missing_file(self, tmp_path: Path):
        history = RunHistory(tmp_path / "none.ndjson")
        assert history.read_all() == []
        assert history.entry_count() == 0
