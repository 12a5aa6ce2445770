"""Tests for configuration, logging setup and database engine helpers."""

import json
import logging
import sys

import pytest
from pydantic import ValidationError as PydanticValidationError

from flow_orchestrator.config import (
    AppConfig,
    LogLevel,
    get_config,
    get_development_config,
    get_testing_config,
    load_config,
    reset_config,
)
from flow_orchestrator.core.logging import (
    StructuredFormatter,
    clear_logging_context,
    set_logging_context,
    setup_logging,
)
from flow_orchestrator.models.core import SelectionStrategy
from flow_orchestrator.storage.database import get_database_engine, reset_database_engine


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:
    """Test configuration values and derived settings."""

    def test_defaults(self):
        config = AppConfig()

        assert config.default_flow_timeout_ms == 30000
        assert config.default_max_retries == 3
        assert config.default_retry_interval_ms == 1000
        assert config.node_timeout_ms is None
        assert config.default_selection_strategy == SelectionStrategy.DEFAULT_FIRST

    def test_engine_and_guard_settings(self):
        config = AppConfig(default_flow_timeout_ms=100, node_timeout_ms=20, default_rate_limit=7,
                           circuit_breaker_threshold=2, guard_backoff_multiplier=3.0)

        settings = config.engine_settings()
        guard = config.guard_config()

        assert settings.default_timeout_ms == 100
        assert settings.node_timeout_ms == 20
        assert guard.default_rate_limit == 7
        assert guard.circuit_breaker_threshold == 2
        assert guard.retry_backoff_multiplier == 3.0

    @pytest.mark.parametrize("field, value", [
        ("database_url", "oracle://db"),
        ("port", 70000),
        ("default_flow_timeout_ms", 0),
        ("node_timeout_ms", 0),
        ("max_node_visits", 0),
        ("default_max_retries", -1),
        ("guard_backoff_multiplier", 0.5),
    ])
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(PydanticValidationError):
            AppConfig(**{field: value})

    def test_presets(self):
        assert get_testing_config().database_url == "sqlite:///:memory:"
        assert get_development_config().log_level == LogLevel.DEBUG

    def test_uvicorn_config(self):
        uvicorn_config = AppConfig(port=9000, log_level=LogLevel.WARNING).get_uvicorn_config()

        assert uvicorn_config["port"] == 9000
        assert uvicorn_config["log_level"] == "warning"


class TestConfigLoading:
    """Test loading configuration from the environment and .env files."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOW_ENGINE_PORT", "8100")
        monkeypatch.setenv("FLOW_ENGINE_DEBUG", "yes")
        monkeypatch.setenv("FLOW_ENGINE_NODE_TIMEOUT_MS", "250")
        monkeypatch.setenv("FLOW_ENGINE_DEFAULT_SELECTION_STRATEGY", "ALL_MATCHED")

        config = AppConfig.from_env()

        assert config.port == 8100
        assert config.debug is True
        assert config.node_timeout_ms == 250
        assert config.default_selection_strategy == SelectionStrategy.ALL_MATCHED

    def test_get_config_is_cached_until_reset(self):
        first = get_config()
        assert get_config() is first

        reset_config()
        assert get_config() is not first

    def test_load_config_reads_env_file(self, tmp_path, monkeypatch):
        # load_dotenv writes os.environ; this registers the variable for removal afterwards
        monkeypatch.setenv("FLOW_ENGINE_MAX_NODE_VISITS", "1")
        monkeypatch.delenv("FLOW_ENGINE_MAX_NODE_VISITS")
        env_file = tmp_path / "flow.env"
        env_file.write_text("FLOW_ENGINE_MAX_NODE_VISITS=42\n")

        config = load_config(str(env_file))

        assert config.max_node_visits == 42
        assert get_config() is config


class TestLogging:
    """Test logging setup and context propagation."""

    def test_structured_output_carries_context(self, tmp_path):
        log_file = tmp_path / "logs" / "engine.log"
        setup_logging(level="INFO", log_file=str(log_file), structured=True)

        set_logging_context(instance_id="inst-9", node_id="n1")
        try:
            logging.getLogger("flow_orchestrator.core.test").info("node started")
        finally:
            clear_logging_context()
        for handler in logging.getLogger().handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "node started"
        assert entry["instance_id"] == "inst-9"
        assert entry["node_id"] == "n1"
        setup_logging(level="WARNING")

    def test_formatter_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["exception"]["type"] == "RuntimeError"
        assert entry["exception"]["message"] == "boom"


class TestDatabaseEngine:
    """Test the process-wide database engine."""

    def test_engine_is_reused_until_reset(self):
        reset_database_engine()
        try:
            engine = get_database_engine("sqlite:///:memory:")
            assert get_database_engine() is engine
        finally:
            reset_database_engine()
