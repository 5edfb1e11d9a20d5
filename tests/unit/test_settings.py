# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for runtime settings and the command environment.
"""
from pathlib import Path

import pytest
from pydantic import ValidationError

from kiln.MANAGERS.environment_manager import DEFAULT_PATH, EnvironmentManager
from kiln.MODELS.settings import Settings
from kiln.MODELS.spec_model import Container


class TestEnvironmentManager:
    """Tests for EnvironmentManager."""

    def test_container_environ_over_base(self):
        """Test that the container's values are layered over a minimal base."""
        container = Container(name="c", environ={"HOME": "/work/target", "RUST_BACKTRACE": 1})
        env = EnvironmentManager().get_merged_environment(container)
        assert env == {"PATH": DEFAULT_PATH, "HOME": "/work/target", "RUST_BACKTRACE": "1"}

    def test_container_wins_on_collision(self):
        container = Container(name="c", environ={"PATH": "/opt/bin"})
        assert EnvironmentManager().get_merged_environment(container)["PATH"] == "/opt/bin"

    def test_nothing_inherited(self, monkeypatch):
        """Test that the invoking process's environment does not leak in."""
        monkeypatch.setenv("SECRET_TOKEN", "hunter2")
        env = EnvironmentManager().get_merged_environment(Container(name="c"))
        assert "SECRET_TOKEN" not in env

    def test_custom_base_is_copied(self):
        base = {"PATH": "/bin"}
        manager = EnvironmentManager(base)
        env = manager.get_merged_environment(Container(name="c", environ={"A": "1"}))
        assert env == {"PATH": "/bin", "A": "1"}
        assert base == {"PATH": "/bin"}


class TestSettings:
    """Tests for Settings.load."""

    def test_defaults(self, tmp_path):
        settings = Settings.load(str(tmp_path), environ={})
        assert settings.isolation == "auto"
        assert settings.install_prefix == "/usr"
        assert settings.retry_attempts == 3
        assert settings.resolved_cache_dir == Path(tmp_path).resolve() / ".kiln"

    def test_environment_variables(self, tmp_path):
        settings = Settings.load(str(tmp_path), environ={
            "KILN_ISOLATION": "none",
            "KILN_RETRY_ATTEMPTS": "5",
            "KILN_LOG_LEVEL": "debug",
            "KILN_UNKNOWN": "ignored",
            "PATH": "/bin",
        })
        assert settings.isolation == "none"
        assert settings.retry_attempts == 5
        assert settings.log_level == "DEBUG"

    def test_env_file_then_environment_then_overrides(self, tmp_path):
        """Test the precedence of the configuration sources."""
        (tmp_path / ".kiln.env").write_text(
            "KILN_ARCH=arm64\nKILN_INSTALL_PREFIX=/opt\nKILN_FETCH_TIMEOUT=10\n")
        settings = Settings.load(str(tmp_path),
                                 environ={"KILN_INSTALL_PREFIX": "/usr/local",
                                          "KILN_FETCH_TIMEOUT": "20"},
                                 fetch_timeout=30, isolation=None)
        assert settings.arch == "arm64"
        assert settings.install_prefix == "/usr/local"
        assert settings.fetch_timeout == 30
        assert settings.isolation == "auto"

    def test_explicit_cache_dir(self, tmp_path):
        settings = Settings.load(str(tmp_path), environ={"KILN_CACHE_DIR": str(tmp_path / "c")})
        assert settings.resolved_cache_dir == tmp_path / "c"

    def test_empty_command_timeout(self, tmp_path):
        settings = Settings.load(str(tmp_path), environ={"KILN_COMMAND_TIMEOUT": ""})
        assert settings.command_timeout is None

    @pytest.mark.parametrize("environ", [
        {"KILN_ISOLATION": "docker"},
        {"KILN_LOG_LEVEL": "LOUD"},
        {"KILN_RETRY_ATTEMPTS": "0"},
    ])
    def test_invalid_values(self, tmp_path, environ):
        with pytest.raises(ValidationError):
            Settings.load(str(tmp_path), environ=environ)
