"""Unit tests for BridgeConfig and Settings.

Tests validation and runtime command resolution.
No mocks - uses real environment variables via monkeypatch.
"""

import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

from kernel_bridge.config import BridgeConfig
from kernel_bridge.settings import Settings

# ============================================================================
# Config Validation
# ============================================================================


class TestBridgeConfigValidation:
    """Tests for BridgeConfig field validation."""

    def test_defaults(self) -> None:
        """BridgeConfig has sensible defaults."""
        config = BridgeConfig()
        assert config.state_capacity == 500
        assert config.max_pending_submissions == 500
        assert config.restart_on_failure is True
        assert config.restart_on_completion is True
        assert config.startup_timeout_seconds == 30.0
        assert config.stop_grace_seconds == 3.0
        assert config.kill_timeout_seconds == 2.0
        assert config.interpret_timeout_seconds is None
        assert config.runtime_command is None
        assert config.runtime_env == {}
        assert config.working_dir is None

    def test_state_capacity_range(self) -> None:
        assert BridgeConfig(state_capacity=1).state_capacity == 1
        with pytest.raises(ValidationError):
            BridgeConfig(state_capacity=0)

    def test_max_pending_range(self) -> None:
        with pytest.raises(ValidationError):
            BridgeConfig(max_pending_submissions=0)

    def test_timeouts_positive(self) -> None:
        with pytest.raises(ValidationError):
            BridgeConfig(startup_timeout_seconds=0)
        with pytest.raises(ValidationError):
            BridgeConfig(interpret_timeout_seconds=-1)
        assert BridgeConfig(stop_grace_seconds=0).stop_grace_seconds == 0

    def test_empty_runtime_command_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BridgeConfig(runtime_command=())

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BridgeConfig(restart=True)  # type: ignore[call-arg]

    def test_frozen(self) -> None:
        config = BridgeConfig()
        with pytest.raises(ValidationError):
            config.state_capacity = 10  # type: ignore[misc]

    def test_working_dir_coerced(self, tmp_path: Path) -> None:
        assert BridgeConfig(working_dir=str(tmp_path)).working_dir == tmp_path  # type: ignore[arg-type]


# ============================================================================
# Runtime command resolution
# ============================================================================


class TestRuntimeCommand:
    """Tests for get_runtime_command() resolution order."""

    def test_explicit_command(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KERNEL_BRIDGE_RUNTIME_COMMAND", '["/from/env"]')
        config = BridgeConfig(runtime_command=("/opt/repl", "--bridge"))
        assert config.get_runtime_command() == ["/opt/repl", "--bridge"]

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KERNEL_BRIDGE_RUNTIME_COMMAND", '["/from/env", "-x"]')
        assert BridgeConfig().get_runtime_command() == ["/from/env", "-x"]

    def test_bundled_worker_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("KERNEL_BRIDGE_RUNTIME_COMMAND", raising=False)
        assert BridgeConfig().get_runtime_command() == [sys.executable, "-u", "-m", "kernel_bridge.worker"]


class TestSettings:
    """Tests for environment-driven Settings."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("RUNTIME_COMMAND", "LAUNCH_ATTEMPTS", "STREAM_BUFFER_LIMIT"):
            monkeypatch.delenv(f"KERNEL_BRIDGE_{name}", raising=False)
        settings = Settings()
        assert settings.runtime_command is None
        assert settings.launch_attempts == 3
        assert settings.stream_buffer_limit == 16 * 1024 * 1024

    def test_env_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KERNEL_BRIDGE_LAUNCH_ATTEMPTS", "5")
        assert Settings().launch_attempts == 5

    def test_invalid_env_value(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KERNEL_BRIDGE_LAUNCH_ATTEMPTS", "0")
        with pytest.raises(ValidationError):
            Settings()
