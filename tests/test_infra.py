"""Tests for migrations and logging setup."""

import json
import logging
from pathlib import Path
from unittest.mock import MagicMock

import pytest

import edcrm
from edcrm.logging_config import HumanFormatter, JSONFormatter, setup_logging
from edcrm.services import migrations


class TestMigrations:
    def test_bundled_migration_found(self):
        names = [f.name for f in migrations.list_migration_files()]
        assert names == ["0001_crm_settings.sql"]

    def test_migrations_ship_inside_package(self):
        package_dir = Path(edcrm.__file__).parent
        assert migrations.MIGRATIONS_DIR.parent == package_dir
        assert (package_dir / "migrations" / "0001_crm_settings.sql").is_file()

    def test_order_and_skips(self, tmp_path):
        for name in ("0002_b.sql", "0001_a.sql", "_template.sql", "9999_health.sql", "notes.txt"):
            (tmp_path / name).write_text("SELECT 1;")
        assert [f.name for f in migrations.list_migration_files(tmp_path)] == ["0001_a.sql", "0002_b.sql"]

    def test_missing_dir(self, tmp_path):
        assert migrations.run_migrations(tmp_path / "absent") == 0

    def test_applies_each_file(self, tmp_path, monkeypatch):
        (tmp_path / "0001_a.sql").write_text("CREATE SCHEMA IF NOT EXISTS crm;")
        (tmp_path / "0002_b.sql").write_text("SELECT 1;")
        conn = MagicMock()
        monkeypatch.setattr(migrations, "get_db_connection", lambda dsn=None: conn)

        assert migrations.run_migrations(tmp_path) == 2

        cursor = conn.__enter__.return_value.cursor.return_value.__enter__.return_value
        assert [c.args[0] for c in cursor.execute.call_args_list] == ["CREATE SCHEMA IF NOT EXISTS crm;", "SELECT 1;"]

    def test_failure_rolls_back(self, tmp_path, monkeypatch):
        (tmp_path / "0001_a.sql").write_text("BROKEN")
        conn = MagicMock()
        cursor = conn.__enter__.return_value.cursor.return_value.__enter__.return_value
        cursor.execute.side_effect = RuntimeError("syntax error")
        monkeypatch.setattr(migrations, "get_db_connection", lambda dsn=None: conn)

        with pytest.raises(RuntimeError):
            migrations.run_migrations(tmp_path)
        conn.__enter__.return_value.rollback.assert_called_once()


class TestLogging:
    def record(self, **extra):
        record = logging.LogRecord("edcrm.workbook", logging.WARNING, __file__, 10, "Row %d locked", (7,), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        entry = json.loads(JSONFormatter().format(self.record(worksheet="Task")))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "edcrm.workbook"
        assert entry["msg"] == "Row 7 locked"
        assert entry["worksheet"] == "Task"

    def test_human_formatter(self):
        assert "[W] edcrm.workbook: Row 7 locked" in HumanFormatter().format(self.record())

    def test_setup_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("LOG_JSON", "true")
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            setup_logging()
            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])
