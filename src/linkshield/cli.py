from __future__ import annotations

import platform
from functools import partial
from pathlib import Path
from typing import NoReturn

import anyio
import typer

from . import __version__
from .bot import run_bot
from .config import ConfigError, Settings, get_bot_token, load_or_init_config
from .logging import get_logger, setup_logging

logger = get_logger(__name__)

app = typer.Typer(
    add_completion=False,
    help="Approve chat join requests for members of a reference chat.",
)


def _exit_error(message: str) -> NoReturn:
    typer.echo(f"error: {message}", err=True)
    raise typer.Exit(code=1)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _load_settings(config: Path | None) -> tuple[Settings, Path]:
    try:
        settings, cfg_path = load_or_init_config(config)
    except ConfigError as e:
        _exit_error(str(e))
    if settings is None:
        _exit_error(
            f"Config file not found, but it was generated (path = {cfg_path})\n"
            "Set it up to your needs and run me again once you're done."
        )
    return settings, cfg_path


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", help="Path to the config file."
    ),
    verbose: bool | None = typer.Option(
        None,
        "--verbose/--no-verbose",
        help="Emit verbose logs (has priority over config).",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Run the bot until interrupted. Requires the BOT_TOKEN environment variable."""
    _ = version
    try:
        token = get_bot_token()
    except ConfigError as e:
        _exit_error(str(e))

    settings, cfg_path = _load_settings(config)
    if verbose is not None:
        settings.verbose = verbose

    if not settings.directives:
        _exit_error(
            "No directives were found in config, a minimum of one directive is required."
        )

    setup_logging(debug=settings.verbose)
    logger.info("startup.begin", version=__version__)
    logger.debug(
        "startup.environment",
        os=platform.system(),
        config_path=str(cfg_path),
        poller_timeout=settings.poller_timeout,
        handler_timeout=settings.handler_timeout,
        long_poll_timeout=settings.long_poll_timeout,
        max_concurrent_handlers=settings.max_concurrent_handlers,
        directives=len(settings.directives),
    )

    if not anyio.run(partial(run_bot, token, settings)):
        raise typer.Exit(code=1)


def main() -> None:
    app()
