import logging

import pytest
from pydantic import ValidationError

from snapshot_engine.changes.classifier import ChangeClassifier
from snapshot_engine.models.change_state import (
    ChangeDetectionConfig,
    ChangeState,
    FileState,
)
from snapshot_engine.models.enums import ChangeType


def state(**files):
    return ChangeState(
        base_path="/project",
        timestamp="2024-01-01T00:00:00+00:00",
        files={path.replace("__", "/"): value for path, value in files.items()},
    )


def file_state(size=10, modified=1000.0, checksum="aaa"):
    return FileState(size=size, modified=modified, created=modified, checksum=checksum)


@pytest.fixture
def classifier():
    return ChangeClassifier()


class TestCaptureState:
    def test_scan_records_metadata_and_skips_exclusions(self, tmp_path, classifier):
        (tmp_path / "a.txt").write_text("hello")
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "b.py").write_text("x = 1\n")
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "x.js").write_text("js")
        (tmp_path / "app.log").write_text("log")

        result = classifier.capture_state(tmp_path)

        assert sorted(result.files) == ["a.txt", "src/b.py"]
        assert result.base_path == str(tmp_path)
        entry = result.files["a.txt"]
        assert entry.size == 5
        assert entry.checksum is not None
        assert entry.modified > 0
        assert result.stats.total_files == 2
        assert result.stats.total_size == 5 + len("x = 1\n")
        assert result.stats.directories == 2
        assert result.stats.skipped_files == 2
        assert result.stats.errors == []

    def test_size_limits(self, tmp_path):
        classifier = ChangeClassifier(
            ChangeDetectionConfig(checksum_size_limit=5, max_file_size=10)
        )
        (tmp_path / "small.txt").write_text("abc")
        (tmp_path / "medium.txt").write_text("abcdefgh")
        (tmp_path / "large.txt").write_text("a" * 20)

        result = classifier.capture_state(tmp_path)

        assert result.files["small.txt"].checksum is not None
        assert result.files["medium.txt"].checksum is None
        assert "large.txt" not in result.files
        assert result.stats.skipped_files == 1

    def test_checksums_can_be_disabled(self, tmp_path):
        classifier = ChangeClassifier(ChangeDetectionConfig(use_checksums=False))
        (tmp_path / "a.txt").write_text("abc")
        assert classifier.capture_state(tmp_path).files["a.txt"].checksum is None

    def test_missing_directory_is_reported(self, tmp_path, classifier):
        result = classifier.capture_state(tmp_path / "missing")
        assert result.files == {}
        assert len(result.stats.errors) == 1

    def test_capture_never_writes(self, tmp_path, classifier):
        (tmp_path / "a.txt").write_text("abc")
        before = sorted(p.name for p in tmp_path.iterdir())
        classifier.capture_state(tmp_path)
        assert sorted(p.name for p in tmp_path.iterdir()) == before

    def test_detects_real_modifications(self, tmp_path, classifier):
        (tmp_path / "a.txt").write_text("abc")
        (tmp_path / "b.txt").write_text("keep")
        before = classifier.capture_state(tmp_path)

        (tmp_path / "a.txt").write_text("abcdef")
        (tmp_path / "c.txt").write_text("new")
        after = classifier.capture_state(tmp_path)

        assert sorted(classifier.get_modified_files(before, after)) == ["a.txt", "c.txt"]


class TestCompareStates:
    def test_classification(self, classifier):
        before = state(
            kept=file_state(),
            grown=file_state(size=10),
            shrunk=file_state(size=10),
            edited=file_state(checksum="aaa"),
            touched=file_state(modified=1000.0),
            removed=file_state(),
        )
        after = state(
            kept=file_state(),
            grown=file_state(size=20),
            shrunk=file_state(size=5),
            edited=file_state(checksum="bbb"),
            touched=file_state(modified=2000.0),
            added=file_state(),
        )

        comparison = classifier.compare_states(before, after)

        changes = comparison.changes
        assert [c.path for c in changes.created] == ["added"]
        assert [c.path for c in changes.deleted] == ["removed"]
        assert changes.unchanged == ["kept"]
        kinds = {c.path: c.change_type for c in changes.modified}
        assert kinds == {
            "grown": ChangeType.SIZE_INCREASED,
            "shrunk": ChangeType.SIZE_DECREASED,
            "edited": ChangeType.CONTENT_CHANGED,
            "touched": ChangeType.TIMESTAMP_CHANGED,
        }
        assert comparison.has_changes is True
        assert comparison.change_count == 6
        assert comparison.stats.created_files == 1
        assert comparison.stats.modified_files == 4
        assert comparison.stats.deleted_files == 1
        assert comparison.stats.unchanged_files == 1
        assert comparison.stats.total_files == 6

    def test_created_and_deleted_carry_states(self, classifier):
        comparison = classifier.compare_states(
            state(old=file_state(size=3)), state(new=file_state(size=4))
        )
        assert comparison.changes.deleted[0].before.size == 3
        assert comparison.changes.deleted[0].after is None
        assert comparison.changes.created[0].after.size == 4
        assert comparison.changes.created[0].before is None

    def test_identical_states(self, classifier):
        comparison = classifier.compare_states(
            state(a=file_state()), state(a=file_state())
        )
        assert comparison.has_changes is False
        assert comparison.change_count == 0
        assert comparison.changes.unchanged == ["a"]

    def test_mtime_ignored_when_not_tracked(self):
        classifier = ChangeClassifier(
            ChangeDetectionConfig(track_modification_time=False)
        )
        comparison = classifier.compare_states(
            state(a=file_state(modified=1.0)), state(a=file_state(modified=2.0))
        )
        assert comparison.has_changes is False

    def test_missing_checksum_falls_back_to_metadata(self, classifier):
        comparison = classifier.compare_states(
            state(a=file_state(checksum=None)), state(a=file_state(checksum="bbb"))
        )
        assert comparison.has_changes is False


class TestPolicies:
    def test_unexpected_changes_are_warned(self, classifier, caplog):
        comparison = classifier.compare_states(state(), state(a=file_state()))
        with caplog.at_level(logging.WARNING):
            assert classifier.warn_about_unexpected_changes("read_file", False, comparison)
        assert "unexpected file changes" in caplog.text

    def test_missing_declared_changes_are_warned(self, classifier, caplog):
        comparison = classifier.compare_states(state(), state())
        with caplog.at_level(logging.WARNING):
            assert classifier.warn_about_unexpected_changes("write_file", True, comparison)
        assert "no changes detected" in caplog.text

    def test_matching_declarations(self, classifier):
        changed = classifier.compare_states(state(), state(a=file_state()))
        unchanged = classifier.compare_states(state(), state())
        assert not classifier.warn_about_unexpected_changes("write_file", True, changed)
        assert not classifier.warn_about_unexpected_changes("read_file", False, unchanged)

    def test_warnings_can_be_silenced(self, caplog):
        classifier = ChangeClassifier(
            ChangeDetectionConfig(warn_on_unexpected_changes=False)
        )
        comparison = classifier.compare_states(state(), state(a=file_state()))
        with caplog.at_level(logging.WARNING):
            assert classifier.warn_about_unexpected_changes("read_file", False, comparison)
        assert caplog.text == ""

    def test_should_create_snapshot(self, classifier):
        assert not classifier.should_create_snapshot(
            classifier.compare_states(state(), state())
        )
        assert classifier.should_create_snapshot(
            classifier.compare_states(state(), state(a=file_state()))
        )
        assert classifier.should_create_snapshot(
            classifier.compare_states(state(a=file_state()), state())
        )
        assert classifier.should_create_snapshot(
            classifier.compare_states(
                state(a=file_state(checksum="aaa")), state(a=file_state(checksum="bbb"))
            )
        )

    def test_small_and_timestamp_changes_use_threshold(self):
        classifier = ChangeClassifier(ChangeDetectionConfig(minimum_change_size=10))
        touched = classifier.compare_states(
            state(a=file_state(modified=1.0)), state(a=file_state(modified=2.0))
        )
        small = classifier.compare_states(
            state(a=file_state(size=10, checksum=None)),
            state(a=file_state(size=15, checksum=None)),
        )
        large = classifier.compare_states(
            state(a=file_state(size=10, checksum=None)),
            state(a=file_state(size=25, checksum=None)),
        )
        assert touched.has_changes and not classifier.should_create_snapshot(touched)
        assert small.has_changes and not classifier.should_create_snapshot(small)
        assert classifier.should_create_snapshot(large)


class TestConfiguration:
    def test_update_configuration(self, tmp_path, classifier):
        (tmp_path / "keep.md").write_text("x")
        (tmp_path / "skip.md").write_text("x")

        classifier.update_configuration({"exclude_patterns": ["skip.md"]})

        assert sorted(classifier.capture_state(tmp_path).files) == ["keep.md"]
        assert classifier.config.use_checksums is True

    def test_update_configuration_accepts_human_sizes(self, classifier):
        classifier.update_configuration({"max_file_size": "1KB"})
        assert classifier.config.max_file_size == 1024

    def test_update_configuration_rejects_bad_input(self, classifier):
        with pytest.raises(TypeError):
            classifier.update_configuration(["use_checksums"])
        with pytest.raises(ValidationError):
            classifier.update_configuration({"max_file_size": 0})

    def test_config_is_copied(self):
        config = ChangeDetectionConfig()
        classifier = ChangeClassifier(config)
        classifier.update_configuration({"use_checksums": False})
        assert config.use_checksums is True

    def test_stats(self, classifier):
        stats = classifier.get_stats()
        assert stats["exclude_patterns"] == len(classifier.config.exclude_patterns)
        assert stats["config"]["use_checksums"] is True
