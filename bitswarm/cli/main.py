"""Command line interface for bitswarm."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from bitswarm.config.config import ConfigManager, init_config
from bitswarm.core.torrent import TorrentParser
from bitswarm.models import Config, LogLevel, PeerAddress, TorrentInfo
from bitswarm.peer.session import PeerSession
from bitswarm.session.coordinator import DownloadCoordinator
from bitswarm.storage.sink import FileSink
from bitswarm.tracker import StaticPeerSource, TrackerClient, TrackerPeerSource, generate_peer_id
from bitswarm.utils.exceptions import BitswarmError
from bitswarm.utils.logging_config import LoggingContext, setup_logging

logger = logging.getLogger(__name__)
console = Console()


def _raise_cli_error(message: str) -> None:
    """Raise a ClickException with the given message."""
    raise click.ClickException(message) from None


def _get_config(ctx: click.Context) -> Config:
    return ctx.obj["config_manager"].config


def _load_torrent(path: str) -> TorrentInfo:
    try:
        return TorrentParser().parse(path)
    except BitswarmError as e:
        _raise_cli_error(str(e))


def _parse_peer(value: str) -> PeerAddress:
    try:
        return PeerAddress.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from None


def _tracker_client(config: Config, peer_id: bytes | None = None) -> TrackerClient:
    return TrackerClient(
        peer_id=peer_id,
        port=config.network.listen_port,
        timeout=config.network.connection_timeout,
    )


@click.group()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Configuration file path",
)
@click.option(
    "--log-level",
    type=click.Choice([level.value for level in LogLevel], case_sensitive=False),
    help="Override the configured log level",
)
@click.pass_context
def cli(ctx: click.Context, config_file: str | None, log_level: str | None) -> None:
    """bitswarm - BitTorrent piece-acquisition client."""
    ctx.ensure_object(dict)
    try:
        config_manager: ConfigManager = init_config(config_file)
    except BitswarmError as e:
        _raise_cli_error(str(e))

    if log_level:
        cfg = config_manager.config
        config_manager.config = cfg.model_copy(
            update={
                "observability": cfg.observability.model_copy(
                    update={"log_level": LogLevel(log_level.upper())}
                )
            }
        )
    setup_logging(config_manager.config.observability)
    ctx.obj["config_manager"] = config_manager


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True))
def info(torrent_file: str) -> None:
    """Show torrent metadata."""
    torrent = _load_torrent(torrent_file)

    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Name", torrent.name)
    table.add_row("Tracker URL", torrent.announce or "-")
    table.add_row("Length", str(torrent.total_length))
    table.add_row("Info Hash", torrent.info_hash.hex())
    table.add_row("Piece Length", str(torrent.piece_length))
    table.add_row("Pieces", str(torrent.piece_count))
    for entry in torrent.files:
        table.add_row("File", f"{'/'.join(entry.path)} ({entry.length})")
    console.print(table)

    console.print("Piece Hashes:")
    for digest in torrent.piece_hashes:
        console.print(digest.hex())


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True))
@click.pass_context
def peers(ctx: click.Context, torrent_file: str) -> None:
    """Ask the tracker for peers."""
    torrent = _load_torrent(torrent_file)
    client = _tracker_client(_get_config(ctx))
    try:
        response = asyncio.run(client.announce(torrent))
    except BitswarmError as e:
        _raise_cli_error(str(e))
    for address in response.peers:
        console.print(str(address))


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True))
@click.argument("peer")
@click.pass_context
def handshake(ctx: click.Context, torrent_file: str, peer: str) -> None:
    """Handshake with PEER (host:port) and print its peer id."""
    torrent = _load_torrent(torrent_file)
    address = _parse_peer(peer)
    session = PeerSession(
        address, torrent, generate_peer_id(), _get_config(ctx).network
    )

    async def _handshake() -> bytes:
        await session.connect()
        try:
            return session.remote_peer_id
        finally:
            await session.close()

    try:
        remote_id = asyncio.run(_handshake())
    except BitswarmError as e:
        _raise_cli_error(f"Handshake with {address} failed: {e}")
    console.print(f"Peer ID: {remote_id.hex()}")


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True))
@click.option(
    "--output",
    "-o",
    type=click.Path(file_okay=False),
    default=".",
    show_default=True,
    help="Output directory",
)
@click.option(
    "--peer",
    "-p",
    "peer_list",
    multiple=True,
    help="Use these peers (host:port) instead of the tracker",
)
@click.pass_context
def download(
    ctx: click.Context, torrent_file: str, output: str, peer_list: tuple[str, ...]
) -> None:
    """Download TORRENT_FILE into the output directory."""
    config = _get_config(ctx)
    torrent = _load_torrent(torrent_file)
    peer_id = generate_peer_id()

    if peer_list:
        source = StaticPeerSource([_parse_peer(p) for p in peer_list])
    else:
        if not torrent.announce:
            _raise_cli_error("Torrent has no tracker URL; pass --peer")
        source = TrackerPeerSource(torrent, _tracker_client(config, peer_id))

    sink = FileSink(torrent, Path(output))

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TextColumn("{task.completed}/{task.total} pieces"),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
    )
    task_id = progress.add_task(torrent.name, total=torrent.piece_count)

    def _on_progress(completed: int, total: int) -> None:
        progress.update(task_id, completed=completed, total=total)

    coordinator = DownloadCoordinator(
        torrent, source, sink, config=config, peer_id=peer_id, on_progress=_on_progress
    )
    try:
        with progress, LoggingContext("download", torrent=torrent.name):
            asyncio.run(coordinator.download())
    except BitswarmError as e:
        _raise_cli_error(f"Download failed: {e}")
    except KeyboardInterrupt:
        _raise_cli_error("Download interrupted")

    for path in sink.paths:
        console.print(f"Saved {path}")


def main() -> None:
    """Entry point for the bitswarm console script."""
    cli(obj={})


if __name__ == "__main__":
    main()
