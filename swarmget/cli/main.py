"""swarmget command line.

Usage:
    swarmget download "magnet:?xt=urn:btih:..." /tmp/media --timeout 3600
    swarmget download file.torrent /tmp/media --json
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import click
from rich.console import Console

from swarmget import __version__
from swarmget.cli.progress import ProgressReporter
from swarmget.config import init_config
from swarmget.core import TorrentParser, is_magnet, parse_magnet
from swarmget.core.magnet import build_magnet
from swarmget.exceptions import SwarmgetError, ValidationError
from swarmget.models import (
    CompletedOutcome,
    Config,
    ContentDescriptor,
    FailedOutcome,
    LogLevel,
    Outcome,
    PeerAddress,
)
from swarmget.session.controller import SwarmController
from swarmget.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = "/tmp/downloads"  # nosec B108 - matches the reference downloader default


def load_descriptor(source: str) -> ContentDescriptor:
    """Build a content descriptor from a magnet URI or a .torrent path.

    Raises:
        ValidationError: If the source is malformed
        OSError: If the torrent file cannot be read

    """
    if is_magnet(source):
        return parse_magnet(source).to_descriptor()
    if source.startswith("magnet:"):
        msg = "Invalid magnet link format (expected magnet:?xt=urn:btih:...)"
        raise ValidationError(msg, {"received": source})
    return TorrentParser().parse(source)


def apply_overrides(
    config: Config,
    timeout: int | None = None,
    log_level: str | None = None,
) -> Config:
    """Return a copy of ``config`` with command-line overrides applied."""
    if timeout is not None:
        config = config.model_copy(
            update={"timeouts": config.timeouts.model_copy(update={"hard_timeout": float(timeout)})}
        )
    if log_level is not None:
        config = config.model_copy(
            update={
                "observability": config.observability.model_copy(
                    update={"log_level": LogLevel(log_level.upper())}
                )
            }
        )
    return config


async def run_download(
    config: Config,
    descriptor: ContentDescriptor,
    output: Path,
    reporter: ProgressReporter,
    extra_peers: list[PeerAddress] | None = None,
) -> Outcome:
    """Run one swarm to its terminal outcome, cancelling on SIGINT/SIGTERM."""
    controller = SwarmController(config)
    handle = await controller.start(descriptor, output, extra_peers=extra_peers or ())
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, handle.request_cancel)
    try:
        await reporter.follow(handle)
        return await handle.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)


@click.group()
@click.version_option(__version__, prog_name="swarmget")
def cli() -> None:
    """swarmget - peer-to-peer content downloader."""


@cli.command()
@click.argument("source")
@click.argument("output", required=False, default=DEFAULT_OUTPUT, type=click.Path(file_okay=False))
@click.option("--timeout", type=click.IntRange(min=1), help="Hard timeout in seconds (default: 10800)")
@click.option("--json", "json_output", is_flag=True, help="Output progress as JSON lines")
@click.option("--peer", "peers", multiple=True, metavar="HOST:PORT", help="Connect to this peer (repeatable)")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--log-level",
    type=click.Choice([level.value for level in LogLevel], case_sensitive=False),
    help="Override the configured log level",
)
@click.pass_context
def download(
    ctx: click.Context,
    source: str,
    output: str,
    timeout: int | None,
    json_output: bool,
    peers: tuple[str, ...],
    config_file: str | None,
    log_level: str | None,
) -> None:
    """Download SOURCE (magnet link or .torrent file) into OUTPUT."""
    reporter = ProgressReporter(Console(), json_output=json_output)

    try:
        config_manager = init_config(config_file, configure_logging=False)
    except SwarmgetError as e:
        reporter.error("Invalid configuration", detail=str(e))
        ctx.exit(1)
    config = apply_overrides(config_manager.config, timeout=timeout, log_level=log_level)
    setup_logging(config.observability)

    try:
        descriptor = load_descriptor(source)
    except (SwarmgetError, OSError) as e:
        reporter.error("Invalid source", received=source, detail=str(e))
        ctx.exit(1)

    try:
        extra_peers = [PeerAddress.parse(p) for p in peers]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--peer") from e

    output_dir = Path(output)
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        reporter.error("Failed to create output directory", error=str(e))
        ctx.exit(1)

    try:
        outcome = asyncio.run(
            run_download(config, descriptor, output_dir, reporter, extra_peers=extra_peers)
        )
    except SwarmgetError as e:
        reporter.error(e.message, **e.details)
        ctx.exit(1)

    if isinstance(outcome, FailedOutcome):
        ctx.exit(1)
    if isinstance(outcome, CompletedOutcome):
        logger.debug("Wrote %d files", len(outcome.files))
    ctx.exit(0)


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
def magnet(torrent_file: str) -> None:
    """Print the magnet link of TORRENT_FILE."""
    try:
        descriptor = TorrentParser().parse(torrent_file)
    except SwarmgetError as e:
        raise click.ClickException(str(e)) from e
    click.echo(build_magnet(descriptor.info_hash, descriptor.name, descriptor.trackers))


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
