"""Configuration management using Pydantic settings with optional file persistence."""

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Paths ---

APP_NAME = "leadflow"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/leadflow)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_default_results_dir() -> Path:
    """Get the default directory for exported task results."""
    base = Path("~/Documents").expanduser()
    if not base.exists():
        base = Path.home()

    return base / "leadflow-results"


CONFIG_FILE = get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        text = CONFIG_FILE.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        return json.loads(text)
    except (OSError, json.JSONDecodeError):
        return {}


def save_config_file(config_data: dict[str, Any]) -> None:
    """Save settings to the JSON config file."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(config_data, indent=2), encoding="utf-8")


# Standard environment variable names for LLM API keys
STANDARD_ENV_VAR_NAMES: dict[str, str | list[str]] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],
    "groq": "GROQ_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

# Providers that don't require an API key
NO_KEY_PROVIDERS = frozenset({"ollama"})

ProviderType = Literal["openai", "anthropic", "google", "groq", "openrouter", "ollama"]


class LLMSettings(BaseSettings):
    """LLM used to expand a free-text request into search queries."""

    model_config = SettingsConfigDict(env_prefix="LEADFLOW_LLM_")

    provider: ProviderType = Field(default="openai")
    model_name: str = Field(default="gpt-4o-mini")
    api_key: Optional[SecretStr] = Field(default=None, description="Generic API key override (highest priority)")
    base_url: Optional[str] = Field(default=None, description="Custom base URL for OpenAI-compatible APIs")

    def get_api_key_for_provider(self) -> Optional[str]:
        """Resolve API key with priority: generic > standard > LEADFLOW-prefixed.

        Priority order:
        1. LEADFLOW_LLM_API_KEY (generic override)
        2. <PROVIDER>_API_KEY (standard name, e.g. OPENAI_API_KEY)
        3. LEADFLOW_LLM_<PROVIDER>_API_KEY
        """
        if self.api_key:
            return self.api_key.get_secret_value()

        standard_vars = STANDARD_ENV_VAR_NAMES.get(self.provider)
        if standard_vars:
            if isinstance(standard_vars, str):
                standard_vars = [standard_vars]
            for var_name in standard_vars:
                key = os.environ.get(var_name)
                if key:
                    return key

        return os.environ.get(f"LEADFLOW_LLM_{self.provider.upper()}_API_KEY")

    def requires_api_key(self) -> bool:
        """Check if the current provider requires an API key."""
        return self.provider not in NO_KEY_PROVIDERS


class ApifySettings(BaseSettings):
    """Apify actors used for place search and website contact extraction."""

    model_config = SettingsConfigDict(env_prefix="LEADFLOW_APIFY_")

    api_token: Optional[SecretStr] = Field(default=None)
    base_url: str = Field(default="https://api.apify.com/v2")
    search_actor: str = Field(default="compass~crawler-google-places")
    enrichment_actor: str = Field(default="apify~web-scraper")
    run_poll_interval: float = Field(default=5.0, description="Seconds between actor run status checks")
    run_max_wait: float = Field(default=1800.0, description="Maximum seconds to wait for an actor run")
    request_timeout: float = Field(default=30.0, description="HTTP timeout per API request in seconds")

    def get_api_token(self) -> Optional[str]:
        if self.api_token:
            return self.api_token.get_secret_value()
        return os.environ.get("APIFY_TOKEN")


class WorkerSettings(BaseSettings):
    """Background poller and watchdog configuration."""

    model_config = SettingsConfigDict(env_prefix="LEADFLOW_WORKER_")

    enabled: bool = Field(default=True, description="Start the poller with the server")
    poll_interval: float = Field(default=5.0, description="Seconds between polls for pending tasks")
    max_concurrent_tasks: int = Field(default=2, ge=1)
    max_retries: int = Field(default=3, ge=0)
    drain_timeout: float = Field(default=1800.0, description="Seconds stop() waits for in-flight tasks")
    watchdog_interval: float = Field(default=60.0, description="Seconds between stuck-task scans")
    stale_timeout_minutes: float = Field(default=5.0, description="Running tasks not updated for this long are reclaimed")
    stalled_local_timeout_minutes: float = Field(default=45.0, description="Local executions idle this long are aborted and reclaimed")


class PipelineSettings(BaseSettings):
    """Search-and-enrich pipeline tuning."""

    model_config = SettingsConfigDict(env_prefix="LEADFLOW_PIPELINE_")

    max_queries: int = Field(default=3, ge=1)
    query_timeout: float = Field(default=600.0, description="Timeout per search query in seconds")
    fanout_timeout: float = Field(default=900.0, description="Timeout for the whole candidate search in seconds")
    enrichment_timeout: float = Field(default=1800.0, description="Timeout for the detail enrichment call in seconds")
    inter_query_delay: float = Field(default=1.0, description="Pause between queries of one language group")
    search_buffer: int = Field(default=30, description="Total candidates requested across all queries")
    default_result_count: int = Field(default=10, ge=1)
    accept_phone_contact: bool = Field(default=False, description="Treat a phone number as a contact channel")


TransportType = Literal["stdio", "streamable-http", "sse"]


class ServerSettings(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="LEADFLOW_SERVER_")

    logging_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json", description="Structured log rendering: json or console")
    transport: TransportType = Field(default="streamable-http", description="MCP transport: stdio, streamable-http, or sse")
    host: str = Field(default="127.0.0.1", description="Host for HTTP transports")
    port: int = Field(default=8484, description="Port for HTTP transports")
    results_dir: Optional[str] = Field(default=None, description="Directory for exported task results")
    db_path: Optional[str] = Field(default=None, description="SQLite task database (default: config dir)")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="LEADFLOW_", extra="ignore")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    apify: ApifySettings = Field(default_factory=ApifySettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def save(self) -> Path:
        """Save current configuration to file (excluding secrets)."""
        data = self.model_dump(mode="json", exclude_none=True)
        data.get("llm", {}).pop("api_key", None)
        data.get("apify", {}).pop("api_token", None)
        save_config_file(data)
        return CONFIG_FILE

    def get_results_dir(self) -> Path:
        """Get the results directory, creating if needed."""
        if self.server.results_dir:
            path = Path(self.server.results_dir).expanduser()
        else:
            path = get_default_results_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_db_path(self) -> Path:
        if self.server.db_path:
            return Path(self.server.db_path).expanduser()
        return get_config_dir() / "tasks.db"


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    return AppSettings(**file_data)


settings = _load_settings()
