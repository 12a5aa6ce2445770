"""Configuration management for the Flow Orchestration Engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from .core.flow_engine import EngineSettings
from .core.invocation_guard import GuardConfig
from .models.core import SelectionStrategy


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Flow Orchestration Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./flow_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: Optional[str] = Field(default=None, description="Log message format")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # Flow engine settings
    default_flow_timeout_ms: int = Field(default=30000, description="Instance timeout when a definition sets none")
    default_max_retries: int = Field(default=3, description="Node retries when a definition sets none")
    default_retry_interval_ms: int = Field(default=1000, description="Fixed delay between node attempts")
    node_timeout_ms: Optional[int] = Field(default=None, description="Per-node timeout; unset means instance budget only")
    max_node_visits: int = Field(default=1000, description="Upper bound on node visits per instance")
    max_delay_seconds: float = Field(default=300.0, description="Cap for delay nodes")
    default_selection_strategy: SelectionStrategy = Field(
        default=SelectionStrategy.DEFAULT_FIRST,
        description="Strategy used when a trigger does not name one"
    )

    # AI invocation guard settings
    rate_limit_window_ms: int = Field(default=60000, description="Fixed rate-limit window")
    default_rate_limit: int = Field(default=60, description="Calls per provider per window")
    circuit_breaker_threshold: int = Field(default=5, description="Consecutive failures that open the breaker")
    circuit_breaker_timeout_ms: int = Field(default=300000, description="Breaker cooldown")
    guard_max_retries: int = Field(default=3, description="Retries of a guarded call")
    guard_retry_delay_ms: int = Field(default=1000, description="First retry delay of a guarded call")
    guard_backoff_multiplier: float = Field(default=2.0, description="Retry delay multiplier")
    guard_cleanup_interval_ms: int = Field(default=300000, description="Expired counter sweep interval")
    default_ai_provider: str = Field(default="default", description="Provider id when a node names none")
    default_ai_model: str = Field(default="default", description="Model id when a node names none")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('default_flow_timeout_ms', 'rate_limit_window_ms', 'circuit_breaker_timeout_ms',
                     'guard_cleanup_interval_ms')
    @classmethod
    def validate_positive_durations(cls, v):
        if v < 1:
            raise ValueError("Durations must be at least 1 millisecond")
        return v

    @field_validator('node_timeout_ms')
    @classmethod
    def validate_node_timeout(cls, v):
        if v is not None and v < 1:
            raise ValueError("Node timeout must be at least 1 millisecond")
        return v

    @field_validator('max_node_visits', 'default_rate_limit', 'circuit_breaker_threshold')
    @classmethod
    def validate_at_least_one(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('default_max_retries', 'guard_max_retries', 'default_retry_interval_ms', 'guard_retry_delay_ms')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @field_validator('guard_backoff_multiplier')
    @classmethod
    def validate_multiplier(cls, v):
        if v < 1:
            raise ValueError("Backoff multiplier must be at least 1")
        return v

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    def engine_settings(self) -> EngineSettings:
        """Settings consumed by the flow engine."""
        return EngineSettings(
            default_timeout_ms=self.default_flow_timeout_ms,
            default_max_retries=self.default_max_retries,
            default_retry_interval_ms=self.default_retry_interval_ms,
            node_timeout_ms=self.node_timeout_ms,
            max_node_visits=self.max_node_visits,
            max_delay_seconds=self.max_delay_seconds,
            default_strategy=self.default_selection_strategy,
        )

    def guard_config(self) -> GuardConfig:
        """Settings consumed by the AI invocation guard."""
        return GuardConfig(
            rate_limit_window_ms=self.rate_limit_window_ms,
            default_rate_limit=self.default_rate_limit,
            circuit_breaker_threshold=self.circuit_breaker_threshold,
            circuit_breaker_timeout_ms=self.circuit_breaker_timeout_ms,
            max_retries=self.guard_max_retries,
            retry_delay_ms=self.guard_retry_delay_ms,
            retry_backoff_multiplier=self.guard_backoff_multiplier,
            cleanup_interval_ms=self.guard_cleanup_interval_ms,
        )

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"FLOW_ENGINE_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            return type_func(value)

        node_timeout = get_env("NODE_TIMEOUT_MS", None, int)

        return cls(
            app_name=get_env("APP_NAME", "Flow Orchestration Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./flow_engine.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", None),
            log_file=get_env("LOG_FILE", None),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            default_flow_timeout_ms=get_env("DEFAULT_FLOW_TIMEOUT_MS", 30000, int),
            default_max_retries=get_env("DEFAULT_MAX_RETRIES", 3, int),
            default_retry_interval_ms=get_env("DEFAULT_RETRY_INTERVAL_MS", 1000, int),
            node_timeout_ms=node_timeout,
            max_node_visits=get_env("MAX_NODE_VISITS", 1000, int),
            max_delay_seconds=get_env("MAX_DELAY_SECONDS", 300.0, float),
            default_selection_strategy=SelectionStrategy(
                get_env("DEFAULT_SELECTION_STRATEGY", SelectionStrategy.DEFAULT_FIRST.value).lower()
            ),
            rate_limit_window_ms=get_env("RATE_LIMIT_WINDOW_MS", 60000, int),
            default_rate_limit=get_env("DEFAULT_RATE_LIMIT", 60, int),
            circuit_breaker_threshold=get_env("CIRCUIT_BREAKER_THRESHOLD", 5, int),
            circuit_breaker_timeout_ms=get_env("CIRCUIT_BREAKER_TIMEOUT_MS", 300000, int),
            guard_max_retries=get_env("GUARD_MAX_RETRIES", 3, int),
            guard_retry_delay_ms=get_env("GUARD_RETRY_DELAY_MS", 1000, int),
            guard_backoff_multiplier=get_env("GUARD_BACKOFF_MULTIPLIER", 2.0, float),
            guard_cleanup_interval_ms=get_env("GUARD_CLEANUP_INTERVAL_MS", 300000, int),
            default_ai_provider=get_env("DEFAULT_AI_PROVIDER", "default"),
            default_ai_model=get_env("DEFAULT_AI_MODEL", "default"),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config

    from dotenv import load_dotenv
    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        default_flow_timeout_ms=5000,
        default_retry_interval_ms=0,
        guard_retry_delay_ms=0,
        max_node_visits=100,
    )
