"""Runtime configuration from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kernel_bridge import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with KERNEL_BRIDGE_ prefix.
    Example: KERNEL_BRIDGE_RUNTIME_COMMAND='["/opt/runtime/bin/repl", "--bridge"]'
    """

    model_config = SettingsConfigDict(
        env_prefix="KERNEL_BRIDGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Child runtime argv (JSON list in the environment). None = bundled worker.
    runtime_command: list[str] | None = None

    # Spawn retries on transient fork failures
    launch_attempts: int = Field(default=constants.DEFAULT_LAUNCH_ATTEMPTS, ge=1)

    # StreamReader limit for one side-channel line
    stream_buffer_limit: int = Field(default=constants.STREAM_BUFFER_LIMIT, ge=64 * 1024)
