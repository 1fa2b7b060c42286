"""Tests for configuration loading and errors."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from shellqueue.core.config import ConfigLoader, DaemonConfig, Settings, SharedConfig
from shellqueue.core.errors import (
    ConfigError,
    ErrorCategory,
    ErrorSeverity,
    GroupHasTasksError,
    SlotAllocationError,
)


class TestSettings:
    """Test configuration defaults and derived paths."""

    def test_defaults(self):
        config = DaemonConfig()

        assert config.default_parallel_tasks == 1
        assert config.shell == "sh"
        assert "PATH" in config.env_passthrough
        assert not config.pause_group_on_failure

    def test_paths_follow_directory(self, tmp_path):
        shared = SharedConfig(directory=str(tmp_path))

        assert shared.cert_path() == tmp_path / "certs" / "daemon.cert"
        assert shared.key_path() == tmp_path / "certs" / "daemon.key"
        assert shared.secret_path() == tmp_path / "shared_secret"
        assert shared.state_db_path() == tmp_path / "state.db"
        assert shared.task_log_directory() == tmp_path / "task_logs"
        assert shared.socket_path() == tmp_path / "shellqueue.socket"

    def test_explicit_paths_win(self, tmp_path):
        shared = SharedConfig(
            directory=str(tmp_path),
            runtime_directory=str(tmp_path / "run"),
            shared_secret_path=str(tmp_path / "elsewhere" / "secret"),
        )

        assert shared.socket_path() == tmp_path / "run" / "shellqueue.socket"
        assert shared.pid_file_path() == tmp_path / "run" / "shellqueue.pid"
        assert shared.secret_path() == tmp_path / "elsewhere" / "secret"


class TestConfigLoader:
    """Test YAML loading."""

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = ConfigLoader(str(tmp_path / "absent.yaml")).load()
        assert settings == Settings()

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "shellqueue.yaml"
        path.write_text(
            "shared:\n"
            f"  directory: {tmp_path}\n"
            "daemon:\n"
            "  default_parallel_tasks: 4\n"
            "  groups:\n"
            "    build: 2\n"
            "  pause_group_on_failure: true\n"
        )

        settings = ConfigLoader(str(path)).load()
        assert settings.shared.directory == str(tmp_path)
        assert settings.daemon.default_parallel_tasks == 4
        assert settings.daemon.groups == {"build": 2}
        assert settings.daemon.pause_group_on_failure

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "config" / "shellqueue.yaml"
        settings = Settings(daemon=DaemonConfig(callback="echo {id}", kill_grace_seconds=1.5))

        ConfigLoader(str(path)).save(settings)
        assert ConfigLoader(str(path)).load() == settings

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("daemon: [unclosed\n")

        with pytest.raises(ConfigError):
            ConfigLoader(str(path)).load()

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("daemon:\n  default_parallel_tasks: 0\n")

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader(str(path)).load()
        assert exc_info.value.context["config_path"] == str(path)

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ConfigError):
            ConfigLoader(str(path)).load()


class TestErrors:
    """Test error classification."""

    def test_config_error_is_critical(self):
        error = ConfigError("bad", config_path="/tmp/x")
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.category == ErrorCategory.STARTUP
        assert error.kind == "config"

    def test_serialization(self):
        error = GroupHasTasksError("build", [3, 4])
        data = error.to_dict()

        assert data["type"] == "GroupHasTasksError"
        assert data["kind"] == "group_has_tasks"
        assert data["context"] == {"group": "build", "task_ids": [3, 4]}
        assert "3, 4" in data["message"]

    def test_slot_allocation_is_retryable(self):
        error = SlotAllocationError("default", [0], 1)
        assert error.retryable
        assert error.severity == ErrorSeverity.HIGH
