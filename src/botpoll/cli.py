from __future__ import annotations

import signal
from pathlib import Path

import anyio
import typer

from . import __version__
from .api_schemas import Update
from .client import HttpUpdateSource
from .config import ConfigError
from .events import PollingHooks
from .logging import get_logger, setup_logging
from .polling import Poller
from .settings import BotpollSettings, load_settings

logger = get_logger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


async def log_update(update: Update) -> None:
    logger.info("update.received", update_id=update.update_id, kind=update.kind)


async def _run_main_loop(settings: BotpollSettings) -> None:
    source = HttpUpdateSource(
        settings.bot_token,
        api_base=settings.api_base,
        timeout_s=settings.request_timeout_s,
    )
    try:
        async with anyio.create_task_group() as tg:
            poller = Poller(
                source,
                log_update,
                task_group=tg,
                settings=settings.polling,
                hooks=PollingHooks(),
            )
            with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
                await poller.start()
                async for signum in signals:
                    logger.info("cli.shutdown", signal=signal.Signals(signum).name)
                    await poller.stop(reason="shutdown")
                    break
    finally:
        await source.close()


def run(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to botpoll.toml (default: ~/.botpoll/botpoll.toml).",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log Bot API requests, offsets and reschedules.",
    ),
) -> None:
    setup_logging(debug=debug)
    try:
        settings, config_path = load_settings(config)
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    logger.info(
        "cli.config_loaded",
        config_path=str(config_path),
        interval_ms=settings.polling.interval,
    )
    anyio.run(_run_main_loop, settings)


def create_app() -> typer.Typer:
    app = typer.Typer(add_completion=False)
    app.command()(run)
    return app


def main() -> None:
    create_app()()


if __name__ == "__main__":
    main()
