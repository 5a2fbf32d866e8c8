"""Client settings, layered from defaults, a YAML file and the environment."""
import os
import logging
from typing import Dict, Any, Optional, Tuple, Type

import yaml
from pydantic import ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "http://localhost:5000"
DEFAULT_CONFIG_FILE = "inspectra.yaml"
DEFAULT_STATE_FILE = os.path.join("~", ".inspectra", "state.json")
API_URL_ENV = "VITE_API_URL"
CONFIG_FILE_ENV = "INSPECTRA_CONFIG"


def resolve_api_url(api_base: Optional[str]) -> str:
    """Return the API root: the base itself if it already ends in /api, else base + /api."""
    base = (api_base or DEFAULT_API_BASE).rstrip("/")
    return base if base.endswith("/api") else f"{base}/api"


def load_config(config_file: str) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_file: Path to the YAML configuration file

    Returns:
        Dictionary containing the configuration data (empty if the file is missing)
    """
    if not os.path.exists(config_file):
        return {}

    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {config_file}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_file} must contain a mapping")
    return data


class YamlFileSource(PydanticBaseSettingsSource):
    """Values from the YAML settings file; unknown keys are logged and dropped."""

    def __init__(self, settings_cls: Type[BaseSettings], config_file: str, required: bool = False):
        super().__init__(settings_cls)
        if required and not os.path.exists(config_file):
            raise ConfigError(f"Config file not found: {config_file}")
        values = load_config(config_file)
        unknown = set(values) - set(settings_cls.model_fields)
        if unknown:
            logger.warning(f"Ignoring unknown settings from {config_file}: {', '.join(sorted(unknown))}")
        self.values = {k: v for k, v in values.items() if k not in unknown}
        if self.values:
            logger.debug(f"Loaded {len(self.values)} settings from {config_file}")

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self.values.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return dict(self.values)


class ApiUrlEnvSource(PydanticBaseSettingsSource):
    """VITE_API_URL, the variable the web frontend reads, as a fallback for api_base."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        if field_name != "api_base":
            return None, field_name, False
        return os.environ.get(API_URL_ENV) or None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        value, _, _ = self.get_field_value(self.settings_cls.model_fields["api_base"], "api_base")
        return {"api_base": value} if value else {}


class Settings(BaseSettings):
    """Command line > INSPECTRA_* environment > VITE_API_URL > YAML file > defaults."""

    model_config = SettingsConfigDict(env_prefix="INSPECTRA_", extra="ignore", frozen=True)

    api_base: str = DEFAULT_API_BASE
    timeout: float = 185.0  # long scans block the request
    connect_timeout: float = 5.0
    stream_timeout: Optional[float] = None  # no read timeout on progress streams
    state_file: Optional[str] = DEFAULT_STATE_FILE
    history_limit: int = 50
    require_intelligence: bool = True
    log_level: str = "INFO"
    config_file: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        explicit = getattr(init_settings, "init_kwargs", {}).get("config_file")
        config_file = explicit or os.environ.get(CONFIG_FILE_ENV) or DEFAULT_CONFIG_FILE
        return (
            init_settings,
            env_settings,
            ApiUrlEnvSource(settings_cls),
            YamlFileSource(settings_cls, config_file, required=bool(explicit)),
        )

    @property
    def api_url(self) -> str:
        return resolve_api_url(self.api_base)

    @property
    def server_url(self) -> str:
        """Server root without the /api suffix."""
        api_url = self.api_url
        return api_url[: -len("/api")]

    @property
    def state_path(self) -> Optional[str]:
        if not self.state_file:
            return None
        return os.path.expanduser(self.state_file)


def load_settings(config_file: Optional[str] = None, **overrides: Any) -> Settings:
    """Build Settings from every layer, raising ConfigError for unreadable or invalid values.

    Args:
        config_file: YAML path; falls back to $INSPECTRA_CONFIG, then ./inspectra.yaml.
            An explicit path that does not exist is an error.
        overrides: Values from the command line; None entries are skipped
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    if config_file:
        values["config_file"] = config_file
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e
