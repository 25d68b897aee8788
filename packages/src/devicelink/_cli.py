"""``devicelink`` command line (Typer).

One command runs a devicelink instance::

    devicelink --env-file prod.env --instance-id eu-1
    devicelink --dry-run --log-format text

Exit codes: ``0`` clean shutdown, ``1`` configuration error, ``3`` any
other failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import TYPE_CHECKING, Annotated, Any, get_args

import typer
from pydantic import ValidationError

from devicelink._errors import ConfigurationError
from devicelink._settings import LoggingSettings

if TYPE_CHECKING:
    from devicelink._app import App
    from devicelink._settings import Settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

LOG_LEVELS: tuple[str, ...] = get_args(LoggingSettings.model_fields["level"].annotation)
LOG_FORMATS: tuple[str, ...] = get_args(LoggingSettings.model_fields["format"].annotation)


def _choice(value: str | None, choices: tuple[str, ...], option: str) -> str | None:
    """Normalise *value* to the casing used in *choices*, or reject it."""
    if value is None:
        return None
    for choice in choices:
        if value.lower() == choice.lower():
            return choice
    raise typer.BadParameter(
        f"Invalid value '{value}'. Choose from: {', '.join(choices)}",
        param_hint=f"'{option}'",
    )


def load_settings(
    app: App,
    env_file: str,
    *,
    log_level: str | None = None,
    log_format: str | None = None,
    instance_id: str | None = None,
) -> Settings:
    """Build the app's settings from *env_file* plus CLI overrides.

    Raises:
        SystemExit: With :data:`EXIT_CONFIG_ERROR` on invalid settings.
    """
    try:
        settings: Settings = app._settings_class(_env_file=env_file)  # type: ignore[call-arg]
    except ValidationError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc

    logging_overrides: dict[str, Any] = {}
    if log_level is not None:
        logging_overrides["level"] = log_level
    if log_format is not None:
        logging_overrides["format"] = log_format
    if logging_overrides:
        settings.logging = settings.logging.model_copy(update=logging_overrides)
    if instance_id is not None:
        settings.instance = settings.instance.model_copy(update={"instance_id": instance_id})
    return settings


def build_cli(app: App) -> typer.Typer:
    """Typer application running *app* with the parsed options."""
    cli = typer.Typer(help=f"{app._name} v{app._version} — {app._description}")

    @cli.callback(invoke_without_command=True)
    def main(
        show_version: Annotated[
            bool | None,
            typer.Option("--version", is_eager=True, help="Show version and exit."),
        ] = None,
        dry_run: Annotated[
            bool,
            typer.Option("--dry-run", help="In-memory stores, MQTT publications discarded."),
        ] = False,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override the log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override the log format (json or text)."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to a .env file."),
        ] = ".env",
        instance_id: Annotated[
            str | None,
            typer.Option("--instance-id", help="Override this backend instance's id."),
        ] = None,
    ) -> None:
        if show_version:
            typer.echo(f"{app._name} v{app._version}")
            raise typer.Exit()

        level = _choice(log_level, LOG_LEVELS, "--log-level")
        fmt = _choice(log_format, LOG_FORMATS, "--log-format")
        app._dry_run = dry_run
        settings = load_settings(
            app,
            env_file,
            log_level=level,
            log_format=fmt,
            instance_id=instance_id,
        )
        _run(app, settings)

    return cli


def _run(app: App, settings: Settings) -> None:
    """Run the process, mapping failures to exit codes."""
    try:
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(app._run_async(settings=settings))
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc
    except SystemExit:
        raise
    except Exception as exc:
        logger.exception("devicelink stopped on unexpected error: %s", exc)
        sys.exit(EXIT_RUNTIME_ERROR)


def main() -> None:
    """Console script entry point."""
    from devicelink import __version__
    from devicelink._app import App

    App(version=__version__).cli()
