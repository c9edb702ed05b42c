from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("memory_engine.config")

APP_DIR_NAME = "project-memory"

DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"
DEFAULT_LOCAL_DIMENSIONS = 384


def _resolve_env_file() -> str | None:
    # Allow explicit path override
    env_file = os.getenv("MEMORY_ENGINE_ENV_FILE", ".env")
    env_file = (env_file or "").strip()
    if not env_file:
        return None
    return env_file if os.path.exists(env_file) else None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEMORY_ENGINE_",
        extra="ignore",
        env_file=_resolve_env_file(),
        env_file_encoding="utf-8",
    )

    # Empty means $XDG_DATA_HOME/project-memory
    data_dir: str = ""
    # Empty means {data_dir}/config.json
    config_path: str = ""
    # Empty means detect from the git checkout / working directory
    project_id: str = ""
    log_level: str = "INFO"

    # Interpreter used for the vector worker subprocess. It must have a
    # sqlite3 module that can load extensions.
    vec_worker_python: str = ""


settings = Settings()


# --- plugin config file (config.json) ---


class _ConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EmbeddingConfig(_ConfigModel):
    provider: Literal["openai", "voyage", "local"] = "local"
    model: str = DEFAULT_LOCAL_MODEL
    dimensions: Optional[int] = Field(default=None, gt=0)
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    data_dir: Optional[str] = Field(default=None, alias="dataDir")
    # milliseconds, like the server's --grace-period flag
    server_grace_period: Optional[int] = Field(default=None, alias="serverGracePeriod", ge=0)

    @field_validator("base_url", "api_key")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class LoggingConfig(_ConfigModel):
    enabled: bool = False
    file: str = ""


class CompactionConfig(_ConfigModel):
    custom_prompt: bool = Field(default=True, alias="customPrompt")
    inline_planning: bool = Field(default=True, alias="inlinePlanning")
    max_context_tokens: int = Field(default=4000, alias="maxContextTokens", gt=0)
    snapshot_to_kv: bool = Field(default=True, alias="snapshotToKV")


class PluginConfig(_ConfigModel):
    data_dir: Optional[str] = Field(default=None, alias="dataDir")
    embedding: EmbeddingConfig
    dedup_threshold: Optional[float] = Field(default=None, alias="dedupThreshold")
    logging: Optional[LoggingConfig] = None
    compaction: Optional[CompactionConfig] = None


def resolve_data_dir() -> str:
    explicit = (getattr(settings, "data_dir", "") or "").strip()
    if explicit:
        return str(Path(explicit).expanduser())
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return str(Path(base) / APP_DIR_NAME)


def resolve_log_path(data_dir: Optional[str] = None) -> str:
    return str(Path(data_dir or resolve_data_dir()) / "logs" / "memory.log")


def resolve_config_path(data_dir: Optional[str] = None) -> str:
    explicit = (getattr(settings, "config_path", "") or "").strip()
    if explicit:
        return str(Path(explicit).expanduser())
    return str(Path(data_dir or resolve_data_dir()) / "config.json")


def default_plugin_config(data_dir: Optional[str] = None) -> PluginConfig:
    return PluginConfig(
        embedding=EmbeddingConfig(dimensions=DEFAULT_LOCAL_DIMENSIONS),
        logging=LoggingConfig(enabled=False, file=resolve_log_path(data_dir)),
    )


_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


def sanitize_json(raw: str) -> str:
    """Strip trailing commas so hand-edited config files still parse."""
    return _TRAILING_COMMA_RE.sub(r"\1", raw)


def load_plugin_config(path: Optional[str] = None) -> PluginConfig:
    """Load config.json, falling back to defaults on any problem.

    The result is always a fully validated ``PluginConfig``; a broken file
    never yields a partially-typed object and never aborts startup.
    """
    config_path = path or resolve_config_path()
    if not os.path.exists(config_path):
        return default_plugin_config()

    try:
        raw = Path(config_path).read_text(encoding="utf-8")
        parsed = json.loads(sanitize_json(raw))
    except (OSError, ValueError) as e:
        logger.warning("Failed to load config at %s: %s, using defaults", config_path, e)
        return default_plugin_config()

    if not isinstance(parsed, dict):
        logger.warning("Invalid config at %s, using defaults", config_path)
        return default_plugin_config()

    try:
        config = PluginConfig.model_validate(parsed)
    except ValidationError as e:
        logger.warning(
            "Invalid config at %s (%d errors), using defaults", config_path, e.error_count()
        )
        return default_plugin_config()

    if config.logging is not None and not config.logging.file:
        config.logging.file = resolve_log_path(config.data_dir)
    return config


def resolve_project_id(directory: Optional[str] = None) -> str:
    """``settings.project_id``, else the git top-level directory name, else the directory name."""
    explicit = (getattr(settings, "project_id", "") or "").strip()
    if explicit:
        return explicit
    cwd = directory or os.getcwd()
    try:
        out = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=5,
            check=True,
        )
        toplevel = out.stdout.strip()
        if toplevel:
            return Path(toplevel).name
    except (OSError, subprocess.SubprocessError):
        pass
    return Path(cwd).resolve().name
