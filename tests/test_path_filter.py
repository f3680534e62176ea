import logging
import os
import stat

import pytest
from pydantic import ValidationError

from snapshot_engine.filtering.path_filter import PathFilter
from snapshot_engine.models.enums import BinaryHandling
from snapshot_engine.models.filter_config import FilterConfig


def make_stats(size=100, mode=stat.S_IFREG | 0o644):
    return os.stat_result((mode, 0, 0, 1, 0, 0, size, 0, 0, 0))


class TestFileDecisions:
    @pytest.fixture
    def path_filter(self):
        return PathFilter()

    @pytest.mark.parametrize(
        "path",
        [
            "node_modules/lodash/index.js",
            "packages/app/node_modules/react/index.js",
            ".git/HEAD",
            "sub/.git/config",
            "src/__pycache__/main.cpython-311.pyc",
            "dist/bundle.js",
            "build/output.o",
            "debug.log",
            "logs/nested/app.log",
            ".env",
            ".env.local",
            "coverage/lcov.info",
            ".DS_Store",
            ".venv/lib/site.py",
        ],
    )
    def test_default_exclusions(self, path_filter, path):
        assert path_filter.should_include_file(path, make_stats()) is False

    @pytest.mark.parametrize(
        "path", ["src/app.js", "README.md", "package.json", ".gitignore", "src/.eslintrc"]
    )
    def test_regular_files_included(self, path_filter, path):
        assert path_filter.should_include_file(path, make_stats()) is True

    def test_windows_separators_normalized(self, path_filter):
        assert path_filter.should_include_file("node_modules\\x\\y.js", make_stats()) is False
        assert path_filter.should_include_file("src\\main.py", make_stats()) is True

    def test_case_insensitive_by_default(self, path_filter):
        assert path_filter.should_include_file("DEBUG.LOG", make_stats()) is False

    def test_case_sensitive_matching(self):
        path_filter = PathFilter(FilterConfig(case_sensitive=True))
        assert path_filter.should_include_file("DEBUG.LOG", make_stats()) is True
        assert path_filter.should_include_file("debug.log", make_stats()) is False

    def test_size_limit(self):
        path_filter = PathFilter(FilterConfig(max_file_size=1000))
        assert path_filter.should_include_file("a.txt", make_stats(size=1000)) is True
        assert path_filter.should_include_file("a.txt", make_stats(size=1001)) is False

    def test_non_regular_files_excluded(self, path_filter):
        assert path_filter.should_include_file("dir", make_stats(mode=stat.S_IFDIR | 0o755)) is False
        assert path_filter.should_include_file("fifo", make_stats(mode=stat.S_IFIFO | 0o644)) is False

    def test_symlinks_excluded_unless_followed(self):
        link_stats = make_stats(mode=stat.S_IFLNK | 0o777)
        assert PathFilter().should_include_file("link.txt", link_stats) is False
        following = PathFilter(FilterConfig(follow_symlinks=True))
        assert following.should_include_file("link.txt", link_stats) is True

    def test_stats_are_read_when_omitted(self, tmp_path, monkeypatch, path_filter):
        (tmp_path / "file.txt").write_text("hello")
        (tmp_path / "debug.log").write_text("log")
        monkeypatch.chdir(tmp_path)
        assert path_filter.should_include_file("file.txt") is True
        assert path_filter.should_include_file("debug.log") is False

    def test_stat_failure_excludes(self, tmp_path, path_filter, caplog):
        with caplog.at_level(logging.WARNING):
            assert path_filter.should_include_file(str(tmp_path / "missing.txt")) is False
        assert "Failed to get file stats" in caplog.text


class TestBinaryPolicy:
    def test_binary_detection(self):
        path_filter = PathFilter()
        assert path_filter.is_binary_file("images/logo.PNG")
        assert path_filter.is_binary_file("lib/native.so")
        assert not path_filter.is_binary_file("src/main.py")
        assert not path_filter.is_binary_file(".png")
        assert not path_filter.is_binary_file("Makefile")

    def test_exclude_policy(self):
        path_filter = PathFilter(FilterConfig(binary_file_handling=BinaryHandling.EXCLUDE))
        assert path_filter.should_include_file("logo.png", make_stats()) is False

    def test_include_policy(self):
        path_filter = PathFilter(FilterConfig(binary_file_handling="include"))
        assert path_filter.should_include_file("logo.png", make_stats()) is True

    def test_warn_policy_includes_and_logs(self, caplog):
        path_filter = PathFilter(FilterConfig(binary_file_handling="warn"))
        with caplog.at_level(logging.WARNING):
            assert path_filter.should_include_file("logo.png", make_stats()) is True
        assert "Including binary file" in caplog.text


class TestInclusionOverride:
    def test_inclusion_overrides_exclusion_size_and_binary(self):
        path_filter = PathFilter(
            FilterConfig(
                custom_exclusions=["temp/**"],
                custom_inclusions=["temp/keep.txt", "assets/*.png", "big.dat"],
                max_file_size=10,
            )
        )
        assert path_filter.should_include_file("temp/keep.txt", make_stats()) is True
        assert path_filter.should_include_file("temp/other.txt", make_stats()) is False
        assert path_filter.should_include_file("assets/logo.png", make_stats()) is True
        assert path_filter.should_include_file("big.dat", make_stats(size=10_000)) is True

    def test_included_file_reachable_through_excluded_directory(self):
        path_filter = PathFilter(
            FilterConfig(custom_exclusions=["temp/**"], custom_inclusions=["temp/keep.txt"])
        )
        assert path_filter.should_include_directory("temp") is True
        assert path_filter.should_include_directory("other") is True

    def test_excluded_directory_without_inclusion(self):
        path_filter = PathFilter(FilterConfig(custom_exclusions=["temp/**"]))
        assert path_filter.should_include_directory("temp") is False
        assert path_filter.should_include_directory("node_modules") is False
        assert path_filter.should_include_directory("src/node_modules") is False
        assert path_filter.should_include_directory(".git") is False
        assert path_filter.should_include_directory("src") is True

    def test_inclusion_prefix_does_not_open_unrelated_directories(self):
        path_filter = PathFilter(
            FilterConfig(custom_exclusions=["temp/**", "cache/**"], custom_inclusions=["temp/keep.txt"])
        )
        assert path_filter.should_include_directory("cache") is False

    def test_deep_inclusion_pattern(self):
        path_filter = PathFilter(FilterConfig(custom_inclusions=["node_modules/mylib/**"]))
        assert path_filter.should_include_directory("node_modules") is True
        assert path_filter.should_include_directory("node_modules/mylib") is True
        assert path_filter.should_include_directory("node_modules/other") is False
        assert path_filter.should_include_file("node_modules/mylib/index.js", make_stats()) is True
        assert path_filter.should_include_file("node_modules/other/index.js", make_stats()) is False


class TestInvalidPatterns:
    def test_invalid_exclusion_fails_closed(self, caplog):
        with caplog.at_level(logging.WARNING):
            path_filter = PathFilter(FilterConfig(custom_exclusions=["broken\\"]))
        assert "Invalid exclusion pattern" in caplog.text
        assert path_filter.should_include_file("src/main.py", make_stats()) is False
        assert path_filter.should_include_directory("src") is False

    def test_invalid_exclusion_still_allows_inclusions(self):
        path_filter = PathFilter(
            FilterConfig(custom_exclusions=["broken\\"], custom_inclusions=["src/**"])
        )
        assert path_filter.should_include_file("src/main.py", make_stats()) is True
        assert path_filter.should_include_file("README.md", make_stats()) is False

    def test_invalid_inclusion_is_ignored(self, caplog):
        with caplog.at_level(logging.WARNING):
            path_filter = PathFilter(FilterConfig(custom_inclusions=["broken\\"]))
        assert "Invalid inclusion pattern" in caplog.text
        assert path_filter.should_include_file("src/main.py", make_stats()) is True
        assert path_filter.get_filter_stats()["invalid_patterns"] == 1

    def test_removing_invalid_pattern_recovers(self):
        path_filter = PathFilter(FilterConfig(custom_exclusions=["broken\\"]))
        path_filter.remove_exclusion("broken\\")
        assert path_filter.should_include_file("src/main.py", make_stats()) is True

    @pytest.mark.parametrize("pattern", ["broken\\", "[z-a]", "src/[z-a].py"])
    def test_every_kind_of_invalid_pattern_fails_closed(self, pattern):
        path_filter = PathFilter(FilterConfig(custom_exclusions=[pattern]))
        assert path_filter.get_filter_stats()["invalid_patterns"] == 1
        assert path_filter.should_include_file("src/main.py", make_stats()) is False

    def test_invalid_pattern_through_update_configuration(self):
        path_filter = PathFilter()
        path_filter.update_configuration({"custom_exclusions": ["[z-a]"]})
        assert path_filter.should_include_file("src/main.py", make_stats()) is False

        path_filter.update_configuration({"custom_exclusions": []})
        assert path_filter.should_include_file("src/main.py", make_stats()) is True

    def test_invalid_pattern_through_add_exclusion(self):
        path_filter = PathFilter()
        path_filter.add_exclusion("[z-a]")
        assert path_filter.should_include_file("README.md", make_stats()) is False


class TestEscapedPatterns:
    def test_escaped_wildcard_matches_literally(self):
        path_filter = PathFilter(FilterConfig(custom_exclusions=["a\\*b.txt"]))
        assert path_filter.get_filter_stats()["invalid_patterns"] == 0
        assert path_filter.should_include_file("a*b.txt", make_stats()) is False
        assert path_filter.should_include_file("a/zb.txt", make_stats()) is True
        assert path_filter.should_include_file("azb.txt", make_stats()) is True

    def test_backslash_paths_are_still_normalized(self):
        path_filter = PathFilter()
        assert path_filter.should_include_file("node_modules\\lib\\index.js", make_stats()) is False


class TestConfiguration:
    def test_add_and_remove_exclusion(self):
        path_filter = PathFilter()
        assert path_filter.should_include_file("secrets.yaml", make_stats()) is True

        path_filter.add_exclusion("secrets.yaml")
        path_filter.add_exclusion("secrets.yaml")
        assert path_filter.config.custom_exclusions == ["secrets.yaml"]
        assert path_filter.should_include_file("config/secrets.yaml", make_stats()) is False

        path_filter.remove_exclusion("secrets.yaml")
        assert path_filter.should_include_file("config/secrets.yaml", make_stats()) is True

    def test_add_default_exclusion_is_noop(self):
        path_filter = PathFilter()
        path_filter.add_exclusion("*.log")
        assert path_filter.config.custom_exclusions == []

    def test_remove_default_exclusion_is_noop(self):
        path_filter = PathFilter()
        path_filter.remove_exclusion("*.log")
        assert "*.log" in path_filter.get_active_patterns()

    def test_add_and_remove_inclusion(self):
        path_filter = PathFilter()
        path_filter.add_inclusion("debug.log")
        path_filter.add_inclusion("debug.log")
        assert path_filter.config.custom_inclusions == ["debug.log"]
        assert path_filter.should_include_file("debug.log", make_stats()) is True

        path_filter.remove_inclusion("debug.log")
        assert path_filter.should_include_file("debug.log", make_stats()) is False

    def test_update_configuration_with_mapping(self):
        path_filter = PathFilter()
        path_filter.update_configuration({"max_file_size": 50, "custom_exclusions": ["*.md"]})
        assert path_filter.config.max_file_size == 50
        assert path_filter.should_include_file("README.md", make_stats(size=10)) is False
        assert path_filter.should_include_file("a.txt", make_stats(size=60)) is False
        # Unrelated settings survive the merge
        assert path_filter.config.binary_file_handling == "exclude"

    def test_update_configuration_with_model(self):
        path_filter = PathFilter(FilterConfig(max_file_size=50))
        path_filter.update_configuration(FilterConfig(binary_file_handling="include"))
        assert path_filter.config.binary_file_handling == "include"
        assert path_filter.config.max_file_size == 50

    def test_update_configuration_accepts_human_sizes(self):
        path_filter = PathFilter()
        path_filter.update_configuration({"max_file_size": "2MB"})
        assert path_filter.config.max_file_size == 2 * 1024 * 1024

    @pytest.mark.parametrize("bad", [None, "max_file_size=5", 42, ["a"]])
    def test_update_configuration_rejects_non_mappings(self, bad):
        with pytest.raises(TypeError):
            PathFilter().update_configuration(bad)

    def test_update_configuration_validates(self):
        path_filter = PathFilter()
        with pytest.raises(ValidationError):
            path_filter.update_configuration({"max_file_size": -1})
        with pytest.raises(ValidationError):
            path_filter.update_configuration({"unknown_option": True})

    def test_config_is_copied(self):
        config = FilterConfig()
        path_filter = PathFilter(config)
        path_filter.add_exclusion("*.md")
        assert config.custom_exclusions == []

    def test_filter_stats(self):
        path_filter = PathFilter(FilterConfig(custom_exclusions=["*.md"], custom_inclusions=["x"]))
        stats = path_filter.get_filter_stats()
        assert stats["custom_patterns"] == 1
        assert stats["inclusion_patterns"] == 1
        assert stats["total_patterns"] == stats["default_patterns"] + 1
        assert stats["invalid_patterns"] == 0

    def test_test_paths(self):
        results = PathFilter().test_paths(["src/a.py", "debug.log", "logo.png", "node_modules/x.js"])
        assert results["included"] == ["src/a.py"]
        assert results["excluded"] == ["debug.log", "logo.png", "node_modules/x.js"]
