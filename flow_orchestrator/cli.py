"""Command line interface: run the server, manage the database and check flow definitions."""

import argparse
import json
import sys
from typing import List, Optional

from .config import AppConfig, get_development_config, get_testing_config, load_config
from .core.logging import get_logger, setup_logging
from .factory import build_orchestrator, create_app
from .storage.database import build_engine, create_tables, drop_tables

logger = get_logger(__name__)


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="flow-orchestrator",
        description="Flow Orchestration Engine - node graph execution for robot conversations"
    )

    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--env", choices=["development", "testing"], help="Configuration preset")
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the API server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Create database tables")
    db_subparsers.add_parser("reset", help="Drop and recreate database tables")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")

    flows_parser = subparsers.add_parser("flows", help="Flow definition tools")
    flows_subparsers = flows_parser.add_subparsers(dest="flows_command", help="Flow commands")
    validate_parser = flows_subparsers.add_parser("validate", help="Validate flow definition JSON files")
    validate_parser.add_argument("files", nargs="+", help="JSON files holding one definition each")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration from the preset or environment, then apply command line overrides."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    overrides = {
        "host": args.host,
        "port": args.port,
        "reload": args.reload or None,
        "database_url": args.database_url,
        "log_level": args.log_level,
        "log_file": args.log_file,
        "debug": args.debug or None,
    }
    updates = {key: value for key, value in overrides.items() if value is not None}
    if updates:
        config = AppConfig.model_validate({**config.model_dump(), **updates})
    return config


def run_server(config: AppConfig) -> int:
    import uvicorn

    logger.info(f"Starting server on {config.host}:{config.port}")
    if config.reload:
        # reload needs an import string; the reloaded app reads its config from the environment
        uvicorn.run("flow_orchestrator.main:app", **config.get_uvicorn_config())
    else:
        uvicorn.run(create_app(config), **config.get_uvicorn_config())
    return 0


def run_database_command(command: Optional[str], config: AppConfig) -> int:
    """Run database management commands."""
    if command is None:
        print("Database command required. Use --help for options.")
        return 1

    engine = build_engine(config.database_url, config.database_echo)
    try:
        if command == "reset":
            logger.info("Dropping database tables...")
            drop_tables(engine)
        create_tables(engine)
        print(f"Database tables ready at {config.database_url}")
    finally:
        engine.dispose()
    return 0


def show_configuration(config: AppConfig) -> int:
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Flow Timeout: {config.default_flow_timeout_ms}ms")
    print(f"  Node Retries: {config.default_max_retries} every {config.default_retry_interval_ms}ms")
    print(f"  Max Node Visits: {config.max_node_visits}")
    print(f"  Selection Strategy: {config.default_selection_strategy.value}")
    print(f"  AI Rate Limit: {config.default_rate_limit} per {config.rate_limit_window_ms}ms")
    print(f"  Circuit Breaker: {config.circuit_breaker_threshold} failures, "
          f"{config.circuit_breaker_timeout_ms}ms cooldown")
    return 0


def validate_flow_files(files: List[str], config: AppConfig) -> int:
    """Validate definitions against the registered node types without storing them."""
    scratch = AppConfig.model_validate({**config.model_dump(), "database_url": "sqlite:///:memory:"})
    engine = build_orchestrator(scratch).engine

    failures = 0
    for path in files:
        try:
            with open(path, encoding="utf-8") as handle:
                definition = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            print(f"{path}: cannot read definition: {e}")
            failures += 1
            continue

        result = engine.validate_flow_definition(definition)
        print(f"{path}: {'valid' if result.is_valid else 'INVALID'}")
        for error in result.errors:
            print(f"  error: {error}")
        for warning in result.warnings:
            print(f"  warning: {warning}")
        if not result.is_valid:
            failures += 1

    return 1 if failures else 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the command line interface."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        structured=config.log_structured,
    )

    if args.command == "run" or args.command is None:
        return run_server(config)
    if args.command == "db":
        return run_database_command(args.db_command, config)
    if args.command == "config":
        if args.config_command == "show":
            return show_configuration(config)
        print("Configuration command required. Use --help for options.")
        return 1
    if args.command == "flows":
        if args.flows_command == "validate":
            return validate_flow_files(args.files, config)
        print("Flows command required. Use --help for options.")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
