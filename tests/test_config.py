"""Tests for run configuration: tool resolution and cache location."""

from __future__ import annotations

from pathlib import Path

from fl.config import (
    CACHE_FILE_NAME,
    RunConfig,
    ToolCommand,
    resolve_cache_dir,
    resolve_cache_file,
    resolve_tool_command,
)


class TestResolveToolCommand:
    def test_plain_flutter(self, tmp_path):
        assert resolve_tool_command(tmp_path) == ToolCommand("flutter", ())

    def test_fvm_directory_in_parent(self, tmp_path):
        (tmp_path / ".fvm").mkdir()
        nested = tmp_path / "packages" / "app"
        nested.mkdir(parents=True)
        tool = resolve_tool_command(nested)
        assert tool.argv("run") == ["fvm", "flutter", "run"]

    def test_fvm_config_file(self, tmp_path):
        (tmp_path / "fvm_config.json").write_text("{}")
        assert resolve_tool_command(tmp_path).executable == "fvm"

    def test_describe(self):
        assert ToolCommand("fvm", ("flutter",)).describe("devices", "--machine") == "fvm flutter devices --machine"


class TestResolveCacheDir:
    def test_override(self):
        assert resolve_cache_dir({"FL_DEVICE_CACHE_DIR": "/tmp/x", "HOME": "/home/u"}) == Path("/tmp/x")

    def test_windows_profile(self):
        assert resolve_cache_dir({"USERPROFILE": "C:/Users/u"}, platform="win32") == Path("C:/Users/u") / ".fl"

    def test_windows_without_profile(self):
        assert resolve_cache_dir({"HOME": "/home/u"}, platform="win32") is None

    def test_xdg(self):
        env = {"XDG_CACHE_HOME": "/xdg", "HOME": "/home/u"}
        assert resolve_cache_dir(env, platform="linux") == Path("/xdg/fl")

    def test_home(self):
        assert resolve_cache_dir({"HOME": "/home/u"}, platform="darwin") == Path("/home/u/.cache/fl")

    def test_nothing_set(self):
        assert resolve_cache_dir({}, platform="linux") is None


class TestResolveCacheFile:
    def test_creates_directory(self, tmp_path):
        cache_dir = tmp_path / "c"
        path = resolve_cache_file({"FL_DEVICE_CACHE_DIR": str(cache_dir)}, platform="linux")
        assert path == cache_dir / CACHE_FILE_NAME
        assert cache_dir.is_dir()

    def test_unusable_directory_disables_cache(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        assert resolve_cache_file({"FL_DEVICE_CACHE_DIR": str(blocker / "sub")}, platform="linux") is None


class TestRunConfig:
    def test_from_environment(self, tmp_path):
        config = RunConfig.from_environment(
            project_dir=tmp_path, env={"FL_DEVICE_CACHE_DIR": str(tmp_path / "cache")}, verbose=True,
        )
        assert config.cache_file == tmp_path / "cache" / CACHE_FILE_NAME
        assert config.watch_path == tmp_path / "lib"
        assert config.debounce_seconds == 0.5
        assert config.reload_cooldown == 1.0
        assert config.restart_cooldown == 2.0
        assert config.retention.days == 30
        assert config.verbose
