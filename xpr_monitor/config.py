"""Configuration management for the XPR node monitor."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from xpr_monitor.errors import ConfigurationError

DEFAULT_CONFIG_PATH = "/etc/xpr-monitor/config.yaml"


class TelegramSettings(BaseModel):
    """Telegram bot credentials and long-poll settings."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(min_length=1, description="Bot API token")
    chat_id: str = Field(min_length=1, description="The single authorized chat id")
    enable_bot: bool = Field(default=False, description="Run the interactive command bot")
    poll_timeout: int = Field(default=60, ge=0, description="getUpdates long-poll timeout in seconds")
    poll_limit: int = Field(default=10, ge=1, le=100, description="Max updates per poll")
    retry_delay: float = Field(default=1.0, ge=0, description="Pause after an empty or bad poll")
    logs_lines: int = Field(default=15, ge=1, description="Lines returned by /logs")

    @property
    def request_timeout(self) -> float:
        # The HTTP timeout has to outlive the server-side long poll.
        return float(self.poll_timeout + 10)


class MonitorConfig(BaseModel):
    """Main configuration for the node monitor."""

    model_config = ConfigDict(frozen=True)

    # Node identity and endpoints
    bp_name: str = Field(default="MyXPRNode", description="Device name shown in every message")
    process_name: str = Field(default="nodeos", description="Executable name of the node process")
    local_api: str = Field(default="http://127.0.0.1:8888", description="Local chain API")
    api_url: str = Field(default="https://mainnet.api.xpr.network", description="Public chain API")
    api_timeout: float = Field(default=10, gt=0, description="Per-request API timeout in seconds")

    # Thresholds
    max_blocks_behind: int = Field(default=100, ge=1, description="Blocks-behind threshold")
    cpu_critical_threshold: float = Field(default=90, ge=0, le=100)
    memory_critical_threshold: float = Field(default=90, ge=0, le=100)
    disk_critical_threshold: float = Field(default=90, ge=0, le=100)
    disk_path: str = Field(default="/", description="Mount point sampled for disk usage")

    # Auto-restart
    auto_restart_nodeos: bool = Field(default=True)
    max_restart_attempts: int = Field(default=3, ge=0)
    restart_state_file: str = Field(default="/var/tmp/xpr_monitor_restart.state")
    nodeos_dir: str = Field(default="/opt/xpr", description="Directory holding stop.sh/start.sh")
    stop_script: str = Field(default="stop.sh")
    start_script: str = Field(default="start.sh")
    restart_settle_seconds: float = Field(default=10, ge=0, description="Wait between stop and start")
    restart_grace_seconds: float = Field(default=45, ge=0, description="Wait after start before re-probing")
    restart_command_timeout: float = Field(default=120, gt=0)

    # Output
    log_file: str = Field(default="/var/log/xpr-monitor.log", description="Append-only event log")
    log_level: str = Field(default="INFO", description="Diagnostic logging level")

    telegram: TelegramSettings

    @field_validator("local_api", "api_url")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        try:
            url = httpx.URL(v)
            port = url.port
        except (httpx.InvalidURL, ValueError) as e:
            raise ValueError(f"invalid endpoint URL {v!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"endpoint must be an http(s) URL with a host, got {v!r}")
        if port is not None and not 0 < port <= 65535:
            raise ValueError(f"endpoint port must be 1-65535, got {port}")
        return v


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Configuration file {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must be a mapping")
    return data


def load_config(config_path: Optional[str] = None) -> MonitorConfig:
    """Load configuration from file, then apply environment overrides.

    Raises:
        ConfigurationError: the file is missing or the values do not validate.
    """
    if config_path is None:
        config_path = os.getenv("XPR_MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    path = Path(config_path)
    if not path.is_file():
        raise ConfigurationError(f"Configuration file not found at {path}")

    config_data = _read_yaml(path)
    telegram_data = dict(config_data.get("telegram") or {})

    env_overrides = {
        "bp_name": os.getenv("BP_NAME"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            config_data[key] = value

    if os.getenv("TELEGRAM_TOKEN"):
        telegram_data["token"] = os.getenv("TELEGRAM_TOKEN")
    if os.getenv("CHAT_ID"):
        telegram_data["chat_id"] = os.getenv("CHAT_ID")
    # YAML parses bare numeric chat ids as ints.
    if "chat_id" in telegram_data:
        telegram_data["chat_id"] = str(telegram_data["chat_id"])
    config_data["telegram"] = telegram_data

    try:
        return MonitorConfig(**config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e
