"""Configuration management for the Nexaflow service.

Every field of :class:`AppConfig` can be set from the environment as
``NEXAFLOW_<FIELD_NAME>``; pydantic coerces the raw strings to the field's type.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator


ENV_PREFIX = "NEXAFLOW_"
DEFAULT_DATABASE_URL = "sqlite:///./nexaflow.db"
SUPPORTED_DATABASES = ("sqlite", "postgresql", "mysql")


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database backends."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Service settings: HTTP server, storage, graph runner, agent and logging."""

    # Service
    app_name: str = "Nexaflow"
    app_version: str = "1.0.0"
    debug: bool = False

    # HTTP server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = False

    # Storage
    database_url: str = DEFAULT_DATABASE_URL
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Workflow graph runner
    max_concurrent_executions: int = Field(default=10, ge=1, description="Executions coordinated at once")
    max_node_workers: int = Field(default=16, ge=1, description="Threads shared by all running nodes")
    execution_timeout: float = Field(default=3600, gt=0, description="Wall-clock budget per execution, seconds")
    node_timeout: float = Field(default=300, gt=0, description="Default per-node timeout, seconds")
    node_retry_base_delay: float = Field(default=1.0, ge=0)
    node_retry_max_delay: float = Field(default=30.0, ge=0)

    # Agent
    agent_max_iterations: int = Field(default=30, ge=1, description="Reasoning rounds per agent call")
    agent_step_delay: float = Field(default=0.01, ge=0, description="Pause between streamed steps, seconds")
    agent_stream_queue_size: int = Field(default=256, ge=1, description="Buffered steps before the producer blocks")
    workspace_root: str = Field(default="./generated-projects", description="One sub-directory per workspace")

    # Reasoning backend
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    anthropic_max_tokens: int = Field(default=16384, ge=1)
    anthropic_temperature: float = Field(default=0.2, ge=0.0, le=1.0)

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_file: Optional[str] = None
    log_max_size: int = Field(default=10 * 1024 * 1024, description="Rotate the log file at this many bytes")
    log_backup_count: int = 5
    structured_logging: bool = Field(default=False, description="Emit JSON log lines")

    # Request monitoring
    slow_request_threshold: float = Field(default=5.0, description="Requests slower than this are logged, seconds")
    enable_performance_monitoring: bool = True

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_methods: List[str] = Field(default_factory=lambda: ["GET", "POST", "PUT", "PATCH", "DELETE"])

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = _scheme(v)
        if scheme not in SUPPORTED_DATABASES:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_DATABASES)}")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("cors_origins", "cors_methods", mode="before")
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(_scheme(self.database_url))

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Keyword arguments for ``uvicorn.run``."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug,
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AppConfig":
        """Build a config from ``NEXAFLOW_*`` variables; unset variables keep their defaults.

        ``ANTHROPIC_API_KEY`` is honoured when ``NEXAFLOW_ANTHROPIC_API_KEY`` is not set.
        """
        environ = os.environ if environ is None else environ
        values = {
            name: environ[ENV_PREFIX + name.upper()]
            for name in cls.model_fields
            if ENV_PREFIX + name.upper() in environ
        }
        if "anthropic_api_key" not in values and environ.get("ANTHROPIC_API_KEY"):
            values["anthropic_api_key"] = environ["ANTHROPIC_API_KEY"]
        return cls(**values)


def _scheme(url: str) -> str:
    # "postgresql+psycopg://..." -> "postgresql"
    return url.split("://", 1)[0].lower().split("+", 1)[0]


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the process-wide configuration, reading the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load ``config_file`` (or ``./.env``) into the environment, then read the config from it."""
    global _config
    from dotenv import load_dotenv

    env_file = Path(config_file) if config_file else Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def _ensure_dir(path: Path, label: str, errors: List[str]) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        errors.append(f"Cannot create {label} {path}: {e}")


def validate_config(config: AppConfig) -> None:
    """Check settings that depend on each other or on the filesystem.

    Creates the SQLite database directory, the log directory and the
    workspace root when missing. Raises ValueError listing every problem found.
    """
    errors: List[str] = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_dir = Path(config.database_url.split(":///", 1)[-1]).parent
        if str(db_dir) not in ("", "."):
            _ensure_dir(db_dir, "database directory", errors)

    if config.log_file:
        _ensure_dir(Path(config.log_file).parent, "log directory", errors)

    _ensure_dir(Path(config.workspace_root), "workspace root", errors)

    if config.node_timeout > config.execution_timeout:
        errors.append("Node timeout cannot exceed execution timeout")
    if config.node_retry_base_delay > config.node_retry_max_delay:
        errors.append("Node retry base delay cannot exceed max delay")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


_PRESETS: Dict[str, Dict[str, Any]] = {
    "development": {
        "debug": True,
        "reload": True,
        "log_level": LogLevel.DEBUG,
        "database_echo": True,
    },
    "production": {
        "log_level": LogLevel.INFO,
        "structured_logging": True,
        "cors_origins": [],
    },
    "testing": {
        "debug": True,
        "database_url": "sqlite:///:memory:",
        "log_level": LogLevel.WARNING,
        "max_concurrent_executions": 4,
        "max_node_workers": 8,
        "execution_timeout": 30,
        "node_timeout": 10,
        "node_retry_base_delay": 0.01,
        "node_retry_max_delay": 0.05,
        "agent_step_delay": 0.0,
    },
}


def get_preset_config(name: str) -> AppConfig:
    """Config for a named environment preset: ``development``, ``production`` or ``testing``."""
    try:
        return AppConfig(**_PRESETS[name])
    except KeyError:
        raise ValueError(f"Unknown environment preset: {name}") from None


def get_development_config() -> AppConfig:
    return get_preset_config("development")


def get_production_config() -> AppConfig:
    return get_preset_config("production")


def get_testing_config() -> AppConfig:
    return get_preset_config("testing")
