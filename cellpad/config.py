"""
Settings: user configuration for cellpad.

Values come from (highest precedence first):
- explicit overrides passed to load_settings() (CLI options)
- CELLPAD_<FIELD> environment variables
- ~/.cellpad/config.json
- the defaults below
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".cellpad"
CONFIG_FILE = CONFIG_DIR / "config.json"
ENV_PREFIX = "CELLPAD_"

InterpreterSource = Literal["cli", "shebang", "config", "discovery"]

DEFAULT_SQL_METHODS = (
    "sql",
    "execute",
    "executemany",
    "executescript",
    "query",
    "read_sql",
    "read_sql_query",
    "read_sql_table",
)


class Settings(BaseSettings):
    """cellpad configuration. Env vars: CELLPAD_DELIMITER, CELLPAD_SQL_METHODS, etc."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="ignore",
    )

    delimiter: str = "# %%"
    interpreter: Optional[str] = None
    interpreter_precedence: Annotated[list[InterpreterSource], NoDecode] = Field(
        default_factory=lambda: ["cli", "shebang", "config", "discovery"]
    )
    handshake_timeout: float = 30.0
    shutdown_timeout: float = 2.0
    poll_interval: float = 0.1
    sql_methods: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_SQL_METHODS)
    )
    completion_limit: int = 50
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"

    @field_validator("sql_methods", "interpreter_precedence", mode="before")
    @classmethod
    def _split_comma_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("delimiter")
    @classmethod
    def _delimiter_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("delimiter must not be blank")
        return v

    @field_validator("interpreter_precedence")
    @classmethod
    def _precedence_unique(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("interpreter_precedence entries must be unique")
        return v


class _JsonSource(PydanticBaseSettingsSource):
    """Settings source over an already-parsed config file."""

    def __init__(self, settings_cls: type[BaseSettings], file_config: dict[str, Any]) -> None:
        super().__init__(settings_cls)
        self._file_config = file_config

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        val = self._file_config.get(field_name)
        return val, field_name, val is not None

    def __call__(self) -> dict[str, Any]:
        return {k: v for k, v in self._file_config.items() if k in self.settings_cls.model_fields}


def _make_settings_class(file_config: dict[str, Any]) -> type[Settings]:
    """Settings subclass whose lowest-priority source is the given file data."""

    class FileSettings(Settings):
        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,
            file_secret_settings: PydanticBaseSettingsSource,
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            # first wins: overrides > env vars > config file
            return (init_settings, env_settings, _JsonSource(settings_cls, file_config))

    return FileSettings


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return {}
    return data


def load_settings(path: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    Load settings from the config file, environment and overrides.

    Args:
        path: Config file to read (defaults to ~/.cellpad/config.json)
        **overrides: Field values that win over everything else; None is ignored

    Returns:
        Validated Settings
    """
    path = Path(path) if path else CONFIG_FILE
    settings_cls = _make_settings_class(_read_config_file(path))
    try:
        return settings_cls(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError:
        logger.error("Invalid cellpad configuration from %s", path)
        raise
