import asyncio
from typing import Optional

import click

from . import __version__
from .config import AppConfig, load_config, save_config
from .logging import get_logger, set_level
from .ui.app import AxonApp


LOG = get_logger(__name__)


def _apply_overrides(
    config: AppConfig,
    server: str | None,
    password: str | None,
    autoconnect: bool | None,
    timeout: float | None,
) -> AppConfig:
    if server:
        config.rpc.server = server
    if password is not None:
        config.rpc.password = password
    if autoconnect is not None:
        config.rpc.autoconnect = autoconnect
    if timeout is not None:
        config.rpc.timeout = timeout
    if config.rpc.autoconnect and not config.rpc.server:
        raise click.UsageError("--autoconnect needs a server")
    save_config(config)
    return config


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--server", default=None, help="Daemon WebSocket URL (default: ws://localhost:8412)")
@click.option("--password", default=None, help="Daemon password")
@click.option("--autoconnect/--no-autoconnect", default=None, help="Log in on start with the saved credentials")
@click.option("--timeout", default=None, type=click.FloatRange(min=0.1), help="Request timeout in seconds")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level for ~/.cache/axon/debug.log",
)
@click.version_option(__version__, "-v", "--version", message="axon %(version)s")
def main(
    server: Optional[str],
    password: Optional[str],
    autoconnect: Optional[bool],
    timeout: Optional[float],
    log_level: Optional[str],
):
    """Run the axon TUI."""
    if log_level:
        set_level(log_level.upper())
    try:
        config = load_config()
    except ValueError as exc:
        raise click.ClickException(f"Invalid config: {exc}") from exc
    config = _apply_overrides(config, server, password, autoconnect, timeout)

    app = AxonApp(config=config)
    try:
        asyncio.run(app.run_async())
    except KeyboardInterrupt:
        LOG.info("Interrupted by user (Ctrl+C)")


if __name__ == "__main__":
    main()
