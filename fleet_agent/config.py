"""Agent configuration."""

from pydantic import ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from fleet_agent.errors import ConfigError


class Settings(BaseSettings):
    """Agent settings loaded from environment variables or ./config.toml."""

    model_config = SettingsConfigDict(
        env_prefix="FLEET_AGENT_",
        toml_file="config.toml",
        extra="ignore",
    )

    # Agent identity
    agent_id: str = ""  # Auto-generated if not set

    # Backend connection
    backend_url: str = "ws://localhost:3000/agent"
    token: str = ""  # Bearer token presented at connect

    # Container tool
    runtime_binary: str = "nerdctl"
    namespace: str = "fleet"
    socket_path: str = "/run/containerd/containerd.sock"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # json | text

    # Host data directory (used for disk usage reporting)
    data_dir: str = "/var/lib/fleet-agent"

    # Local HTTP endpoint
    http_host: str = "127.0.0.1"
    http_port: int = 8080

    # Control channel timeouts (seconds)
    connect_timeout: float = 10.0
    handshake_timeout: float = 10.0
    heartbeat_interval: float = 20.0
    heartbeat_miss_limit: int = 3

    # Reconnect schedule (seconds)
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap: float = 60.0

    # Outbound path
    outbound_queue_size: int = 1024
    log_send_timeout: float = 1.0
    log_buffer_lines: int = 1000

    # Subprocess commands (non-streaming)
    command_timeout: float = 30.0

    # Telemetry
    sample_interval: float = 30.0

    # Host provisioning
    provision_on_start: bool = True
    nerdctl_version: str = "1.7.6"
    cni_plugins_version: str = "v1.4.1"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, env_settings, TomlConfigSettingsSource(settings_cls))


def check_settings(cfg: Settings) -> None:
    """Reject settings the agent cannot start with.

    Raises:
        ConfigError: describing the first offending option
    """
    if not cfg.backend_url.startswith(("ws://", "wss://")):
        raise ConfigError(f"backend_url must be a ws:// or wss:// URL, got {cfg.backend_url!r}")
    if not cfg.token:
        raise ConfigError("token is required to authenticate with the backend")
    if cfg.log_format not in ("json", "text"):
        raise ConfigError(f"log_format must be 'json' or 'text', got {cfg.log_format!r}")
    if not cfg.namespace:
        raise ConfigError("namespace must not be empty")


def load_settings() -> tuple[Settings, ConfigError | None]:
    """Build settings from the environment and config.toml.

    Invalid values do not raise here: defaults are returned together with a
    ConfigError so the entry point can report it once logging is set up.
    """
    try:
        return Settings(), None
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        return Settings.model_construct(), ConfigError(problems)


settings, settings_error = load_settings()
