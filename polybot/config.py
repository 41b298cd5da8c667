# polybot/config.py
"""
Configuration for Polybot.

All configuration flows through this module. Values are loaded from environment
variables (via .env file), optionally seeded from a ``polybot.toml`` file, and
validated with Pydantic. Environment variables always win over file values.
"""

from __future__ import annotations

import ipaddress
import os
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from polybot.errors import ConfigurationError

logger = structlog.get_logger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

CONFIG_FILE_NAME = "polybot.toml"

# Telegram delivers webhooks from these ranges only.
# https://core.telegram.org/bots/webhooks
TELEGRAM_NETWORKS = "149.154.160.0/20,91.108.4.0/22"

DEFAULT_CHAT_PROMPT = (
    "You are an intelligent cat named Nami, you will answer all questions briefly, "
    "and always maintain your character, and will meow from time to time."
)
DEFAULT_ASK_PROMPT = (
    "You are a clever assistant that understands something about everything, "
    "and particularly good with explaining things, you will try to make your "
    "answers as brief as possible."
)


def _join_str_list(value: object) -> object:
    """Accept TOML arrays for comma-separated string settings."""
    if isinstance(value, (list, tuple)):
        return ",".join(str(item).strip() for item in value if str(item).strip())
    return value


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class _PolybotSettings(BaseSettings):
    """BaseSettings with environment variables taking precedence over init values.

    Init values come from ``polybot.toml``; the environment and ``.env`` file
    override them so a deployment can patch a single setting without editing
    the file.
    """

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, dotenv_settings, init_settings, file_secret_settings


class BotConfig(_PolybotSettings):
    """Telegram bot identity and API endpoint."""

    token: str = Field(..., alias="POLYBOT_TOKEN")
    name: str = Field("Polybot", alias="POLYBOT_NAME")
    # Chat that receives unsolicited messages (plant reports).
    owner_chat_id: Optional[int] = Field(None, alias="POLYBOT_OWNER_CHAT_ID")
    api_url: str = Field("https://api.telegram.org", alias="POLYBOT_API_URL")
    request_timeout_seconds: float = Field(30.0, alias="POLYBOT_REQUEST_TIMEOUT")
    # Backoff for Bot API and IP lookups made before the listener starts.
    retry_base_delay: float = Field(1.0, alias="POLYBOT_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(60.0, alias="POLYBOT_RETRY_MAX_DELAY")

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "env_ignore_empty": True,
    }

    @model_validator(mode="after")
    def normalize(self) -> "BotConfig":
        token = self.token.strip()
        if token.startswith(("'", '"')) and token.endswith(("'", '"')) and len(token) >= 2:
            if token[0] == token[-1]:
                token = token[1:-1].strip()
        if not token:
            raise ValueError("POLYBOT_TOKEN must not be empty")
        self.token = token
        self.api_url = self.api_url.rstrip("/")
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        return self


class ServerConfig(_PolybotSettings):
    """Webhook listener: bind address, certificate paths, swap behaviour."""

    ip: str = Field("0.0.0.0", alias="POLYBOT_BIND_IP")
    # Telegram only delivers to ports 443, 80, 88 and 8443; 0 picks a free port.
    port: int = Field(8443, alias="POLYBOT_PORT")
    pubkey_path: Path = Field(Path("./polybot_data/polybot.pem"), alias="POLYBOT_PUBKEY_PATH")
    privkey_path: Path = Field(Path("./polybot_data/polybot.key"), alias="POLYBOT_PRIVKEY_PATH")
    grace_seconds: float = Field(3.0, alias="POLYBOT_GRACE_SECONDS")
    allowed_networks: str = Field(TELEGRAM_NETWORKS, alias="POLYBOT_ALLOWED_NETWORKS")
    backlog: int = Field(128, alias="POLYBOT_BACKLOG")
    swap_max_attempts: int = Field(5, alias="POLYBOT_SWAP_MAX_ATTEMPTS")
    swap_backoff_seconds: float = Field(1.0, alias="POLYBOT_SWAP_BACKOFF_SECONDS")
    swap_backoff_max_seconds: float = Field(30.0, alias="POLYBOT_SWAP_BACKOFF_MAX_SECONDS")

    @field_validator("allowed_networks", mode="before")
    @classmethod
    def accept_network_array(cls, value: object) -> object:
        return _join_str_list(value)

    @model_validator(mode="after")
    def normalize_limits(self) -> "ServerConfig":
        try:
            ipaddress.ip_address(self.ip)
        except ValueError as e:
            raise ValueError(f"POLYBOT_BIND_IP is not an IP address: {self.ip!r}") from e
        if not 0 <= int(self.port) <= 65535:
            raise ValueError(f"POLYBOT_PORT out of range: {self.port}")
        self.grace_seconds = max(0.0, float(self.grace_seconds))
        self.backlog = max(1, int(self.backlog))
        self.swap_max_attempts = max(1, int(self.swap_max_attempts))
        self.swap_backoff_seconds = max(0.0, float(self.swap_backoff_seconds))
        self.swap_backoff_max_seconds = max(
            self.swap_backoff_seconds, float(self.swap_backoff_max_seconds)
        )
        # Fail at startup rather than on the first request.
        self.get_network_list()
        return self

    def get_network_list(self) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        return [ipaddress.ip_network(n, strict=False) for n in _split_csv(self.allowed_networks)]


class MonitorConfig(_PolybotSettings):
    """Public-IP drift monitor and certificate rotation."""

    enabled: bool = Field(True, alias="POLYBOT_MONITOR_ENABLED")
    interval: float = Field(60.0, alias="POLYBOT_MONITOR_INTERVAL")
    ip_lookup_url: str = Field("https://api.ipify.org?format=json", alias="POLYBOT_IP_LOOKUP_URL")
    cert_org: str = Field("Polybot", alias="POLYBOT_CERT_ORG")
    cert_days: int = Field(365, alias="POLYBOT_CERT_DAYS")

    @model_validator(mode="after")
    def normalize_limits(self) -> "MonitorConfig":
        self.interval = max(1.0, float(self.interval))
        self.cert_days = max(1, int(self.cert_days))
        return self


class SessionConfig(_PolybotSettings):
    """Per-user session retention."""

    # Idle sessions older than this are evicted; 0 keeps them for the process lifetime.
    ttl_seconds: float = Field(86400.0, alias="POLYBOT_SESSION_TTL")
    cleanup_interval: float = Field(600.0, alias="POLYBOT_SESSION_CLEANUP_INTERVAL")
    # Conversation history cap in user/assistant turn pairs.
    max_history: int = Field(20, alias="POLYBOT_MAX_HISTORY")

    @model_validator(mode="after")
    def normalize_limits(self) -> "SessionConfig":
        self.ttl_seconds = max(0.0, float(self.ttl_seconds))
        self.cleanup_interval = max(1.0, float(self.cleanup_interval))
        self.max_history = max(1, int(self.max_history))
        return self


class LLMConfig(_PolybotSettings):
    """Language-model backend used by /ask and chat mode."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="POLYBOT_LLM_MODEL")
    max_tokens: int = Field(1024, alias="POLYBOT_LLM_MAX_TOKENS")
    chat_prompt: str = Field(DEFAULT_CHAT_PROMPT, alias="POLYBOT_CHAT_PROMPT")
    ask_prompt: str = Field(DEFAULT_ASK_PROMPT, alias="POLYBOT_ASK_PROMPT")

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "env_ignore_empty": True,
    }

    @model_validator(mode="after")
    def normalize_limits(self) -> "LLMConfig":
        if isinstance(self.api_key, str):
            self.api_key = self.api_key.strip() or None
        self.max_tokens = max(1, int(self.max_tokens))
        return self

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)


class WeatherConfig(_PolybotSettings):
    """Open-Meteo weather lookups for /temp."""

    favourite_city: str = Field("Lehnitz", alias="POLYBOT_FAVOURITE_CITY")
    geocoding_url: str = Field(
        "https://geocoding-api.open-meteo.com/v1/search", alias="POLYBOT_GEOCODING_URL"
    )
    forecast_url: str = Field("https://api.open-meteo.com/v1/forecast", alias="POLYBOT_FORECAST_URL")
    affirmation_url: str = Field("https://www.affirmations.dev", alias="POLYBOT_AFFIRMATION_URL")


class PlantConfig(_PolybotSettings):
    """UDP plant-telemetry listener (auxiliary service)."""

    enabled: bool = Field(False, alias="POLYBOT_PLANT_ENABLED")
    host: str = Field("0.0.0.0", alias="POLYBOT_PLANT_HOST")
    port: int = Field(3333, alias="POLYBOT_PLANT_PORT")
    batch: int = Field(12, alias="POLYBOT_PLANT_BATCH")
    plant_name: str = Field("flowery", alias="POLYBOT_PLANT_NAME")

    @model_validator(mode="after")
    def normalize_limits(self) -> "PlantConfig":
        self.batch = max(1, int(self.batch))
        return self


def find_config() -> Path | None:
    """Search for polybot.toml in standard locations.

    Search order:
    1. ``POLYBOT_CONFIG`` environment variable
    2. Current working directory
    3. ~/.config/polybot/polybot.toml
    """
    explicit = os.environ.get("POLYBOT_CONFIG", "").strip()
    if explicit:
        return Path(explicit)

    cwd = Path.cwd() / CONFIG_FILE_NAME
    if cwd.is_file():
        return cwd

    xdg = Path.home() / ".config" / "polybot" / CONFIG_FILE_NAME
    if xdg.is_file():
        return xdg

    return None


def load_config_file(path: Path) -> dict[str, Any]:
    """Load and parse a polybot.toml file."""
    import tomllib

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e


class PolybotConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. ``file_data`` holds the
    parsed TOML document (section name → table); when omitted, the file is
    looked up with :func:`find_config`.
    """

    def __init__(self, file_data: dict[str, Any] | None = None, *, use_file: bool = True):
        if file_data is None and use_file:
            path = find_config()
            file_data = load_config_file(path) if path is not None else {}
            if path is not None:
                logger.info("config.file_loaded", path=str(path))
        file_data = file_data or {}

        def section(name: str) -> dict[str, Any]:
            value = file_data.get(name, {})
            if not isinstance(value, dict):
                raise ConfigurationError(f"[{name}] must be a table")
            return value

        self.bot = BotConfig(**section("bot"))
        self.server = ServerConfig(**section("server"))
        self.monitor = MonitorConfig(**section("monitor"))
        self.sessions = SessionConfig(**section("sessions"))
        self.llm = LLMConfig(**section("llm"))
        self.weather = WeatherConfig(**section("weather"))
        self.plant = PlantConfig(**section("plant"))

        # The monitor registers https://<ip>:<port>/ with Telegram.
        if self.monitor.enabled and self.server.port == 0:
            raise ConfigurationError(
                "POLYBOT_PORT=0 cannot be registered as a webhook port; "
                "set a fixed port or disable the IP monitor"
            )

        self.server.pubkey_path = self.server.pubkey_path.expanduser().resolve()
        self.server.privkey_path = self.server.privkey_path.expanduser().resolve()

    def __repr__(self) -> str:
        return (
            f"PolybotConfig(name={self.bot.name}, "
            f"bind={self.server.ip}:{self.server.port}, "
            f"monitor={self.monitor.enabled}, "
            f"plant={self.plant.enabled})"
        )
