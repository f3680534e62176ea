import json
import logging

import pytest
from typer.testing import CliRunner

from snapshot_engine.cli import app, get_manager
from snapshot_engine.persistence.sql_repository import SQLSnapshotRepository

runner = CliRunner()


def created_id(output):
    for line in output.splitlines():
        if line.startswith("Snapshot created: "):
            return line.split(": ", 1)[1].strip()
    raise AssertionError(f"No snapshot id in output: {output}")


class TestCLI:
    @pytest.fixture(autouse=True)
    def setup_db(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SNAPSHOT_DATABASE_URL", f"sqlite:///{tmp_path / 'test_cli.db'}")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("SNAPSHOT_CONFIG", raising=False)
        monkeypatch.delenv("SNAPSHOT_STORAGE_TYPE", raising=False)
        monkeypatch.delenv("SNAPSHOT_MAX_SNAPSHOTS", raising=False)
        yield
        logger = logging.getLogger("snapshot_engine")
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)

    @pytest.fixture
    def project(self, tmp_path):
        root = tmp_path / "project"
        root.mkdir()
        (root / "a.txt").write_text("hello")
        (root / "b.txt").write_text("world")
        return root

    def create(self, project, description="Initial"):
        result = runner.invoke(app, ["create", description, "--path", str(project)])
        assert result.exit_code == 0, result.output
        return created_id(result.output)

    def test_get_manager_uses_disk_storage(self):
        manager = get_manager()
        assert isinstance(manager.repository, SQLSnapshotRepository)

    def test_create_and_list(self, project):
        snapshot_id = self.create(project)

        result = runner.invoke(app, ["list"])
        assert result.exit_code == 0
        assert f"[manual] {snapshot_id}: Initial (2 files" in result.output

    def test_list_empty(self):
        result = runner.invoke(app, ["list"])
        assert result.exit_code == 0
        assert "No snapshots found." in result.output

    def test_list_filters(self, project):
        self.create(project, "First")
        second = self.create(project, "Second")

        result = runner.invoke(app, ["list", "--description", "second"])
        assert second in result.output
        assert "First" not in result.output

        result = runner.invoke(app, ["list", "--trigger", "backup"])
        assert "No snapshots found." in result.output

        result = runner.invoke(app, ["list", "--trigger", "cron"])
        assert result.exit_code == 1

    def test_create_specific_files(self, project):
        result = runner.invoke(
            app, ["create", "Only a", "--path", str(project), "--file", "a.txt"]
        )
        assert result.exit_code == 0
        assert "Files: 1" in result.output

    def test_create_invalid_path(self, tmp_path):
        result = runner.invoke(app, ["create", "Broken", "--path", str(tmp_path / "missing")])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_show(self, project):
        snapshot_id = self.create(project)

        result = runner.invoke(app, ["show", snapshot_id[:8]])
        assert result.exit_code == 0
        details = json.loads(result.stdout)
        assert details["id"] == snapshot_id
        assert sorted(f["path"] for f in details["files"]) == ["a.txt", "b.txt"]

        result = runner.invoke(app, ["show", "missing"])
        assert result.exit_code == 1
        assert "Snapshot not found" in result.output

    def test_restore_preview(self, project):
        snapshot_id = self.create(project)
        (project / "a.txt").write_text("edited")
        (project / "c.txt").write_text("new")

        result = runner.invoke(app, ["restore", snapshot_id, "--preview", "--detect-deletions"])

        assert result.exit_code == 0
        assert "modify: a.txt" in result.output
        assert "delete: c.txt" in result.output
        assert "2 files impacted, 1 unchanged" in result.output
        assert (project / "a.txt").read_text() == "edited"

    def test_restore(self, project):
        snapshot_id = self.create(project)
        (project / "a.txt").write_text("edited")

        result = runner.invoke(app, ["restore", snapshot_id])

        assert result.exit_code == 0, result.output
        assert "Backup snapshot: " in result.output
        assert "Restored 1 files, skipped 1 unchanged" in result.output
        assert (project / "a.txt").read_text() == "hello"

    def test_restore_without_backup(self, project):
        snapshot_id = self.create(project)
        (project / "a.txt").write_text("edited")

        result = runner.invoke(app, ["restore", snapshot_id, "--no-backup", "--file", "a.txt"])

        assert result.exit_code == 0
        assert "Backup snapshot" not in result.output
        assert len(get_manager().list_snapshots()) == 1

    def test_restore_unknown(self):
        result = runner.invoke(app, ["restore", "missing"])
        assert result.exit_code == 1
        assert "Snapshot not found" in result.output

    def test_delete(self, project):
        snapshot_id = self.create(project)

        result = runner.invoke(app, ["delete", snapshot_id])
        assert result.exit_code == 0
        assert f"Snapshot deleted: {snapshot_id}" in result.output

        result = runner.invoke(app, ["delete", snapshot_id])
        assert result.exit_code == 1

    def test_stats(self, project):
        self.create(project)

        result = runner.invoke(app, ["stats"])

        assert result.exit_code == 0
        stats = json.loads(result.stdout)
        assert stats["storage"]["snapshot_count"] == 1

    def test_settings_file_limits_retention(self, project, tmp_path, monkeypatch):
        settings = tmp_path / "settings.yaml"
        settings.write_text("storage:\n  max_snapshots: 2\n")
        monkeypatch.setenv("SNAPSHOT_CONFIG", str(settings))

        for description in ("One", "Two", "Three"):
            self.create(project, description)

        result = runner.invoke(app, ["list"])
        assert "Three" in result.output
        assert "Two" in result.output
        assert "One" not in result.output

    def test_validate_config(self, tmp_path):
        valid = tmp_path / "valid.yaml"
        valid.write_text("filtering:\n  max_file_size: 1MB\n")
        result = runner.invoke(app, ["validate-config", str(valid)])
        assert result.exit_code == 0
        assert "is valid" in result.output

        invalid = tmp_path / "invalid.yaml"
        invalid.write_text("storage:\n  max_snapshots: 0\n")
        result = runner.invoke(app, ["validate-config", str(invalid)])
        assert result.exit_code == 1
        assert "Validation Error" in result.output

        broken = tmp_path / "broken.yaml"
        broken.write_text("storage: [unclosed\n")
        result = runner.invoke(app, ["validate-config", str(broken)])
        assert result.exit_code == 1
        assert "Error parsing YAML" in result.output

        result = runner.invoke(app, ["validate-config", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
        assert "File not found" in result.output
