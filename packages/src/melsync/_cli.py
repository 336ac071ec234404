"""Command-line entry point (Typer-based).

Provides :func:`build_cli` which constructs a Typer app that parses
process-level options (``--dry-run``, ``--version``, ``--log-level``,
``--log-format``, ``--env-file``, ``--config``, ``--storage-path``) and
hands off to the platform's async lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, get_args

import typer
from pydantic import ValidationError

from melsync._errors import ConfigError
from melsync._settings import LoggingSettings

if TYPE_CHECKING:
    from melsync._platform import Platform
    from melsync._settings import Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)


def build_cli(platform: Platform) -> typer.Typer:
    """Construct a Typer CLI from a :class:`Platform` instance.

    The returned Typer app exposes a single default command.  When
    invoked it builds settings, applies CLI overrides, and delegates to
    :meth:`Platform._run_async`.
    """
    name = platform._name
    version = platform._version
    description = platform._description

    cli = typer.Typer(help=f"{name} v{version}: {description}")

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        dry_run: Annotated[
            bool,
            typer.Option("--dry-run", help="Run without an MQTT broker."),
        ] = False,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
        config_file: Annotated[
            Path | None,
            typer.Option("--config", help="JSON file holding the accounts."),
        ] = None,
        storage_path: Annotated[
            Path | None,
            typer.Option("--storage-path", help="Directory for snapshot files."),
        ] = None,
    ) -> None:
        if version_flag:
            typer.echo(f"{name} v{version}")
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        platform._dry_run = dry_run

        try:
            settings: Settings = platform._settings_class(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        if log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": log_level.upper()},
            )
        if log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": log_format.lower()},
            )
        if config_file is not None:
            if settings.accounts:
                logger.warning(
                    "--config %s replaces %d account(s) from the environment",
                    config_file,
                    len(settings.accounts),
                )
            settings = settings.model_copy(
                update={"config_file": config_file, "accounts": []},
            )
        if storage_path is not None:
            settings = settings.model_copy(update={"storage_path": storage_path})

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(platform._run_async(settings=settings))
        except SystemExit:
            raise
        except ConfigError as exc:
            logger.error("Configuration error: %s", exc)
            sys.exit(EXIT_CONFIG_ERROR)
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli
