import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

# --- Base Path ---
BASE_DIR = Path(__file__).resolve().parent.parent
logger = logging.getLogger("prdgen.config")

ProviderName = Literal["openai", "google", "anthropic", "gateway"]

# Environment variables that can hold the fallback key of each provider,
# first match wins.
ENV_KEY_VARS: Dict[str, tuple] = {
    "openai": ("OPENAI_API_KEY",),
    "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "gateway": ("GATEWAY_API_KEY", "LOVABLE_API_KEY"),
}

# --- Environment-based Settings ---

class AppSettings(BaseSettings):
    """
    Main application settings loaded from environment variables.
    The .env file is loaded automatically by pydantic-settings.
    """
    model_config = SettingsConfigDict(
        env_file='.env', env_file_encoding='utf-8', extra='ignore', populate_by_name=True
    )

    # --- General & Core ---
    LOG_LEVEL: str = Field("INFO", description="Log level for the application (e.g., DEBUG, INFO, WARNING, ERROR)")
    PRD_CONFIG_DIR: Optional[str] = Field(None, description="Optional: directory holding providers.yml.")
    DATABASE_PATH: str = Field(str(BASE_DIR / "data" / "prdgen.db"), description="SQLite file for PRDs and API keys.")

    # --- Upstream requests ---
    REQUEST_TIMEOUT_SECONDS: float = Field(120.0, description="Per-read timeout for provider requests.")
    CONNECT_TIMEOUT_SECONDS: float = Field(10.0)
    ANTHROPIC_MAX_TOKENS: int = Field(8192)

    # --- Environment fallback keys ---
    OPENAI_API_KEY: Optional[str] = Field(None, validation_alias=AliasChoices(*ENV_KEY_VARS["openai"]))
    GOOGLE_API_KEY: Optional[str] = Field(None, validation_alias=AliasChoices(*ENV_KEY_VARS["google"]))
    ANTHROPIC_API_KEY: Optional[str] = Field(None, validation_alias=AliasChoices(*ENV_KEY_VARS["anthropic"]))
    GATEWAY_API_KEY: Optional[str] = Field(None, validation_alias=AliasChoices(*ENV_KEY_VARS["gateway"]))

    # --- HTTP service ---
    AUTH_TOKENS: Dict[str, str] = Field(default_factory=dict, description="JSON object mapping bearer tokens to user ids.")
    ADMIN_USER_IDS: List[str] = Field(default_factory=list)
    HOST: str = Field("127.0.0.1")
    PORT: int = Field(8000)

    def fallback_key(self, provider: str) -> Optional[str]:
        """Returns the environment key configured for ``provider``, if any."""
        value = {
            "openai": self.OPENAI_API_KEY,
            "google": self.GOOGLE_API_KEY,
            "anthropic": self.ANTHROPIC_API_KEY,
            "gateway": self.GATEWAY_API_KEY,
        }.get(provider)
        return value or None

# --- YAML-based Configuration Models ---

class ProviderSpec(BaseModel):
    model: str
    endpoint: str
    wire: Literal["delta", "anthropic"] = "delta"

class ProvidersConfig(BaseModel):
    priority: List[ProviderName]
    providers: Dict[ProviderName, ProviderSpec]

    @model_validator(mode="after")
    def _priority_is_complete(self):
        missing = [name for name in self.priority if name not in self.providers]
        if missing:
            raise ValueError(f"priority lists providers without a spec: {', '.join(missing)}")
        if len(set(self.priority)) != len(self.priority):
            raise ValueError("priority contains duplicates")
        return self

# --- YAML helpers ---

def _config_dir() -> Path:
    return BASE_DIR / 'configs'

def load_yaml(name: str, config_dir: Optional[Path] = None) -> dict:
    """Loads ``<config_dir>/<name>.yml`` into a dict."""
    config_path = (config_dir or _config_dir()) / f'{name}.yml'
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file '{name}.yml' not found in {config_path.parent}")
    with open(config_path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}

def load_config(name: str, model, config_dir: Optional[Path] = None):
    """Loads a YAML file and validates it with the given Pydantic model."""
    return model.model_validate(load_yaml(name, config_dir))

# --- Main Config Object ---

class Config:
    """
    A unified configuration object.
    """
    def __init__(self, app: Optional[AppSettings] = None):
        try:
            self.app = app or AppSettings()
        except ValidationError as e:
            raise ConfigError(f"Configuration validation error: {e}") from e

        config_dir = Path(self.app.PRD_CONFIG_DIR) if self.app.PRD_CONFIG_DIR else None
        try:
            self.providers: ProvidersConfig = load_config('providers', ProvidersConfig, config_dir)
        except FileNotFoundError as e:
            raise ConfigError(str(e)) from e
        except ValidationError as e:
            raise ConfigError(f"Invalid providers.yml: {e}") from e

# --- Global Config Instance ---
_settings_instance = None

def get_settings() -> Config:
    """
    Returns a singleton instance of the Config object.
    This function controls when the settings are loaded and validated,
    making the application more testable.
    """
    global _settings_instance
    if _settings_instance is None:
        try:
            _settings_instance = Config()
        except ConfigError as e:
            logger.critical(f"FATAL: Could not load configuration. {e}")
            raise
    return _settings_instance

def reset_settings() -> None:
    """Drops the cached Config so the next get_settings() re-reads the environment."""
    global _settings_instance
    _settings_instance = None
