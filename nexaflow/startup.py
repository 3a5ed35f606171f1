"""Command line interface: serve the API and manage the database, config and sessions."""

import argparse
import asyncio
import sys
from datetime import timedelta

from nexaflow.config import (
    AppConfig,
    LogLevel,
    get_preset_config,
    load_config,
    validate_config,
)
from nexaflow.core.logging import get_logger, setup_logging

logger = get_logger(__name__)

# CLI option -> config field, applied on top of the preset or environment
_OVERRIDES = {
    "host": "host",
    "port": "port",
    "reload": "reload",
    "database_url": "database_url",
    "log_file": "log_file",
    "debug": "debug",
    "max_concurrent_executions": "max_concurrent_executions",
    "workspace_root": "workspace_root",
}


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nexaflow",
        description="Nexaflow - streaming coding agent and DAG workflow engine",
    )

    parser.add_argument("--host", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Bind port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    parser.add_argument("--env", choices=["development", "production", "testing"],
                        help="Start from a configuration preset instead of the environment")
    parser.add_argument("--config", help="Path to a .env file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument("--log-level", choices=[level.value for level in LogLevel])
    parser.add_argument("--log-file", help="Also log to this file")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--max-concurrent-executions", type=int,
                        help="Workflow executions coordinated at once")
    parser.add_argument("--workspace-root", help="Directory holding agent workspaces")
    parser.set_defaults(handler=cmd_run, workers=1)

    commands = parser.add_subparsers(dest="command")

    run = commands.add_parser("run", help="Serve the HTTP API")
    run.add_argument("--workers", type=int, default=1, help="Worker processes (default: 1)")
    run.set_defaults(handler=cmd_run)

    db = commands.add_parser("db", help="Database management")
    db.set_defaults(handler=_missing("db"))
    db_commands = db.add_subparsers(dest="db_command")
    db_commands.add_parser("init", help="Create tables").set_defaults(handler=cmd_db)
    db_commands.add_parser("migrate", help="Create indexes and apply SQLite pragmas").set_defaults(handler=cmd_db)
    db_commands.add_parser("reset", help="Drop and recreate all tables").set_defaults(handler=cmd_db)

    health = commands.add_parser("health", help="Run health checks")
    health.add_argument("--detailed", action="store_true", help="Build the app and check every component")
    health.set_defaults(handler=cmd_health)

    config = commands.add_parser("config", help="Inspect configuration")
    config.set_defaults(handler=_missing("config"))
    config_commands = config.add_subparsers(dest="config_command")
    config_commands.add_parser("show", help="Print the effective configuration").set_defaults(handler=cmd_config_show)
    config_commands.add_parser("validate", help="Check the configuration").set_defaults(
        handler=cmd_config_validate, skip_validation=True
    )

    session = commands.add_parser("session", help="Manage API bearer tokens")
    session.set_defaults(handler=_missing("session"))
    session_commands = session.add_subparsers(dest="session_command")
    create = session_commands.add_parser("create", help="Issue a token for a user")
    create.add_argument("user_id")
    create.add_argument("--ttl-hours", type=float, help="Token lifetime in hours (default: no expiry)")
    create.set_defaults(handler=cmd_session_create)
    revoke = session_commands.add_parser("revoke", help="Revoke a token")
    revoke.add_argument("token")
    revoke.set_defaults(handler=cmd_session_revoke)

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Preset (``--env``) or environment, with explicit CLI options on top."""
    config = get_preset_config(args.env) if args.env else load_config(args.config)

    for option, field in _OVERRIDES.items():
        value = getattr(args, option, None)
        if value:
            setattr(config, field, value)
    if args.log_level:
        config.log_level = LogLevel(args.log_level)

    return config


def _missing(group: str):
    def handler(args, config):
        print(f"A '{group}' subcommand is required. Use --help for options.")
        sys.exit(1)
    return handler


def cmd_run(args: argparse.Namespace, config: AppConfig):
    import uvicorn
    from nexaflow.factory import create_app

    workers = args.workers or 1
    logger.info(f"Starting {config.app_name} on {config.host}:{config.port} with {workers} worker(s)")

    if workers > 1:
        # workers re-create the app from the environment
        uvicorn.run("nexaflow.factory:create_app", factory=True, workers=workers, **config.get_uvicorn_config())
    else:
        uvicorn.run(create_app(config), **config.get_uvicorn_config())


def cmd_db(args: argparse.Namespace, config: AppConfig):
    from nexaflow.storage.database import configure_database, create_tables, drop_tables
    from nexaflow.storage.migrations import run_migrations

    configure_database(config.database_url, echo=config.database_echo)

    if args.db_command == "reset":
        logger.warning("Dropping all tables")
        drop_tables()
    if args.db_command in ("init", "reset"):
        create_tables()
    if args.db_command in ("migrate", "reset"):
        run_migrations()

    logger.info(f"Database command '{args.db_command}' completed")


def cmd_health(args: argparse.Namespace, config: AppConfig):
    if not args.detailed:
        print(f"{config.app_name} {config.app_version}: configuration loaded")
        return

    from nexaflow.core.error_recovery import health_checker
    from nexaflow.factory import create_app

    create_app(config)
    results = asyncio.run(health_checker.run_all_checks())

    print(f"Overall Status: {results['overall_status']} ({results['timestamp']})")
    for name, result in results["checks"].items():
        print(f"  {name}: {result.get('status', 'unknown')} - {result.get('message', '')}")

    if results["overall_status"] != "healthy":
        sys.exit(1)


def cmd_config_show(args: argparse.Namespace, config: AppConfig):
    shown = config.model_dump(mode="json")
    shown["anthropic_api_key"] = "set" if config.anthropic_api_key else "not set"
    width = max(len(key) for key in shown)
    for key, value in shown.items():
        print(f"  {key.ljust(width)}  {value}")


def cmd_config_validate(args: argparse.Namespace, config: AppConfig):
    try:
        validate_config(config)
    except ValueError as e:
        print(f"Configuration validation: FAILED\n{e}")
        sys.exit(1)
    print("Configuration validation: PASSED")


def _identity(config: AppConfig):
    from nexaflow.core.identity import IdentityResolver
    from nexaflow.storage.database import configure_database, create_tables

    configure_database(config.database_url, echo=config.database_echo)
    create_tables()
    return IdentityResolver()


def cmd_session_create(args: argparse.Namespace, config: AppConfig):
    ttl = timedelta(hours=args.ttl_hours) if args.ttl_hours else None
    print(_identity(config).create_session(args.user_id, ttl=ttl))


def cmd_session_revoke(args: argparse.Namespace, config: AppConfig):
    if not _identity(config).revoke(args.token):
        print("Token not found")
        sys.exit(1)
    print("Token revoked")


def main(argv=None):
    args = create_argument_parser().parse_args(argv)

    try:
        config = load_configuration(args)
        if not getattr(args, "skip_validation", False):
            validate_config(config)
            setup_logging(level=config.log_level.value, log_file=config.log_file)
        args.handler(args, config)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
