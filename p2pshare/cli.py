#!/usr/bin/env python3
"""
p2pshare CLI

Command-line interface for the LAN peer-to-peer file sharing node.

Usage:
    p2pshare serve                      # Share ./file and serve peers
    p2pshare catalog                    # Show the local catalog
    p2pshare verify NAME                # Check a file's blocks
    p2pshare merge NAME OUTPUT          # Rebuild a file from its blocks
    p2pshare sync -p HOST:PORT ...      # Pull everything peers have
    p2pshare fetch NAME -p HOST:PORT    # Pull one file
    p2pshare broadcast FILE             # Push a file by multicast
    p2pshare receive                    # Listen for pushed files
    p2pshare config                     # Show effective configuration
"""

import asyncio
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import Config, load_config
from .errors import HashMismatchError, P2PShareError
from .file import BlockStore, CatalogManager
from .node import PeerNode

console = Console()
log_console = Console(stderr=True)


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=log_console, show_time=False, show_path=False)]
    )


def _apply_peers(config: Config, peers):
    if peers:
        config.peers = list(peers)
    try:
        config.peer_addresses()
    except P2PShareError as e:
        raise click.BadParameter(str(e), param_hint='--peer')


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='JSON config file')
@click.option('--shared-dir', type=click.Path(file_okay=False), help='Shared directory')
@click.option('--port', type=int, help='Chunk transfer port (catalog handshake uses port + 1)')
@click.pass_context
def cli(ctx, verbose, config_path, shared_dir, port):
    """p2pshare - LAN peer-to-peer file sharing."""
    try:
        config = load_config(Path(config_path) if config_path else None)
        if shared_dir:
            config.shared_dir = Path(shared_dir)
        if port:
            config.transfer_port = port
        config.validate()
    except P2PShareError as e:
        raise click.ClickException(str(e))

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--receive', is_flag=True, help='Also accept multicast pushes')
@click.pass_context
def serve(ctx, receive):
    """Share the shared directory with peers."""
    config = ctx.obj['config']
    if receive:
        config.receive_broadcasts = True

    async def run():
        node = PeerNode(config)

        try:
            await node.start()

            console.print(Panel.fit(
                f"[bold green]Peer Node Started[/bold green]\n\n"
                f"Transfer Port: [yellow]{config.transfer_port}[/yellow]\n"
                f"Catalog Port: [yellow]{node.handshake.port}[/yellow]\n"
                f"Shared Dir: [blue]{config.shared_dir}[/blue]\n"
                f"Files: [cyan]{len(node.catalog)}[/cyan]",
                title="Node Info"
            ))
            console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

            await node.wait_closed()

        except KeyboardInterrupt:
            console.print("\n[yellow]Shutting down...[/yellow]")
        finally:
            await node.stop()
            console.print("[green]Node stopped[/green]")

    try:
        asyncio.run(run())
    except P2PShareError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the catalog document')
@click.pass_context
def catalog(ctx, as_json):
    """Show the local catalog (writes blocks for new files)."""
    config = ctx.obj['config']

    manager = CatalogManager(config.shared_dir, config.chunk_size,
                             BlockStore(config.shared_dir))
    try:
        manager.rebuild()
    except P2PShareError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(manager.to_document(), indent=2))
        return

    entries = [manager.snapshot[name] for name in sorted(manager.snapshot)]
    if not entries:
        console.print("[yellow]No shared files[/yellow]")
        return

    table = Table(title=f"Catalog ({config.shared_dir})")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right", style="yellow")
    table.add_column("Chunks", justify="right")
    table.add_column("File Hash", style="green")

    for entry in entries:
        table.add_row(
            entry.name,
            format_size(entry.size),
            str(entry.chunk_count),
            entry.file_hash[:16] + "..."
        )

    console.print(table)


@cli.command()
@click.argument('name')
@click.pass_context
def verify(ctx, name):
    """Verify the blocks of a shared file against its metadata."""
    store = BlockStore(ctx.obj['config'].shared_dir)

    try:
        ok = store.verify_blocks(name)
    except P2PShareError as e:
        raise click.ClickException(str(e))

    if ok:
        console.print(f"[green]✓ All blocks of {name} verified[/green]")
    else:
        console.print(f"[red]✗ Blocks of {name} missing or corrupt[/red]")
        ctx.exit(1)


@cli.command()
@click.argument('name')
@click.argument('output', type=click.Path(dir_okay=False))
@click.pass_context
def merge(ctx, name, output):
    """Reassemble a shared file from its blocks."""
    store = BlockStore(ctx.obj['config'].shared_dir)

    try:
        ok = store.merge_blocks(name, Path(output))
    except FileNotFoundError:
        raise click.ClickException(f"No blocks for {name}")
    except (HashMismatchError, P2PShareError) as e:
        raise click.ClickException(str(e))

    if ok:
        console.print(f"[green]✓ Merged {name} to {output} (hash verified)[/green]")
    else:
        console.print(f"[red]✗ Merged {name} to {output}, but the file hash does not match[/red]")
        ctx.exit(1)


def _progress_bar():
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    )


def _print_report(report):
    if report.verified:
        console.print(f"[green]✓ {report.file_name}: {report.output_path}[/green]")
    else:
        console.print(Panel.fit(
            f"[bold red]Verification failed[/bold red]\n\n"
            f"Expected: [cyan]{report.expected_hash}[/cyan]\n"
            f"Computed: [yellow]{report.computed_hash}[/yellow]\n"
            f"Failed chunks: [red]{report.failed_chunks}[/red]",
            title=report.file_name
        ))


@cli.command()
@click.option('--peer', '-p', 'peers', multiple=True, help='Peer (host:port)')
@click.pass_context
def sync(ctx, peers):
    """Fetch every file peers have that we don't."""
    config = ctx.obj['config']
    _apply_peers(config, peers)

    async def run():
        node = PeerNode(config)

        with _progress_bar() as progress:
            task = progress.add_task("Syncing...", total=100)

            def update_progress(p):
                progress.update(
                    task,
                    completed=p.progress_percent,
                    description=f"{p.file_name} ({p.completed_chunks}/{p.total_chunks} chunks)"
                )

            reports = await node.sync(progress_callback=update_progress)
            progress.update(task, completed=100, description="Done!")

        if not reports:
            console.print("[green]Already up to date[/green]")
        for report in reports.values():
            _print_report(report)

        return all(r.verified for r in reports.values())

    try:
        ok = asyncio.run(run())
    except P2PShareError as e:
        raise click.ClickException(str(e))
    if not ok:
        ctx.exit(1)


@cli.command()
@click.argument('name')
@click.option('--peer', '-p', 'peers', multiple=True, help='Peer (host:port)')
@click.pass_context
def fetch(ctx, name, peers):
    """Download one file from peers."""
    config = ctx.obj['config']
    _apply_peers(config, peers)

    async def run():
        node = PeerNode(config)

        with _progress_bar() as progress:
            task = progress.add_task("Fetching metadata...", total=100)

            def update_progress(p):
                progress.update(
                    task,
                    completed=p.progress_percent,
                    description=f"Downloading... ({p.completed_chunks}/{p.total_chunks} chunks)"
                )

            report = await node.fetch(name, progress_callback=update_progress)
            progress.update(task, completed=100, description="Done!")

        _print_report(report)
        return report.verified

    try:
        ok = asyncio.run(run())
    except P2PShareError as e:
        raise click.ClickException(str(e))
    if not ok:
        ctx.exit(1)


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def broadcast(ctx, file_path):
    """Push a file to every peer on the subnet (best effort)."""
    config = ctx.obj['config']

    async def run():
        node = PeerNode(config)

        with _progress_bar() as progress:
            task = progress.add_task(f"Broadcasting {Path(file_path).name}...", total=100)

            def update_progress(sent, total, percent):
                progress.update(task, completed=percent)

            return await node.broadcast(Path(file_path), update_progress)

    try:
        sent = asyncio.run(run())
    except (P2PShareError, OSError) as e:
        raise click.ClickException(str(e))

    console.print(f"[green]✓ Sent {sent} fragments to "
                  f"{config.multicast_group}:{config.multicast_port}[/green]")


@cli.command()
@click.pass_context
def receive(ctx):
    """Listen for multicast pushes only."""
    config = ctx.obj['config']

    async def run():
        from .broadcast import BroadcastReceiver

        def on_complete(path, sender):
            console.print(f"[green]✓ Received {path.name}[/green] [dim]from {sender}[/dim]")

        receiver = BroadcastReceiver(
            output_dir=config.downloads,
            group=config.multicast_group,
            port=config.multicast_port,
            on_complete=on_complete,
            assembly_timeout=config.broadcast_assembly_timeout,
        )

        try:
            await receiver.start()
            console.print(f"[dim]Listening on {config.multicast_group}:{config.multicast_port}, "
                          f"press Ctrl+C to stop[/dim]")
            while True:
                await asyncio.sleep(1)
        finally:
            await receiver.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@cli.command('config')
@click.option('--save', 'save_path', type=click.Path(dir_okay=False), help='Write to a JSON file')
@click.pass_context
def show_config(ctx, save_path):
    """Show the effective configuration."""
    config = ctx.obj['config']

    if save_path:
        config.save(Path(save_path))
        console.print(f"[green]Saved configuration to {save_path}[/green]")
        return

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def main():
    cli()


if __name__ == '__main__':
    main()
