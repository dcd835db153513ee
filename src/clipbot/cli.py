from __future__ import annotations

from functools import partial
from pathlib import Path

import anyio
import typer

from . import __version__
from .config import ConfigError, load_settings
from .logging import get_logger, setup_logging
from .telegram.bridge import TelegramBridgeConfig, run_main_loop
from .telegram.client import BotClient

logger = get_logger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _config_path_display(path: Path) -> str:
    home = Path.home()
    try:
        return f"~/{path.relative_to(home)}"
    except ValueError:
        return str(path)


def run(
    config: Path | None = typer.Option(
        None,
        "--config",
        help="Path to the TOML config (default: ~/.clipbot/clipbot.toml).",
    ),
    token: str | None = typer.Option(
        None,
        "--token",
        help="Bot token; overrides `bot_token` from the config.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log Telegram requests and ffmpeg command lines.",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Run the clipbot Telegram bot."""
    setup_logging(debug=debug)
    try:
        settings, config_path = load_settings(config, token_override=token)
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    logger.info(
        "startup.config",
        config=_config_path_display(config_path),
        scratch_dir=str(settings.scratch_dir),
        max_concurrent_jobs=settings.max_concurrent_jobs,
    )
    cfg = TelegramBridgeConfig(bot=BotClient(settings.bot_token), settings=settings)
    try:
        anyio.run(partial(run_main_loop, cfg))
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130)


app = typer.Typer(
    add_completion=False, help="Trim, merge and sample media on Telegram."
)
app.command()(run)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
