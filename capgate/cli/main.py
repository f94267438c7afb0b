"""
capgate CLI - run the gateway and inspect what it would publish.

Run `capgate serve` to start the HTTP gateway, or `capgate routes` to
connect to the configured backends once and list the routes they yield.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from capgate import __version__
from capgate.bridge.publisher import CapabilityPublisher
from capgate.bridge.schema import BackendState
from capgate.bridge.supervisor import Supervisor
from capgate.validation.config import Config, ConfigError, GatewayConfig

console = Console()


def configure_logging(level: str) -> None:
    """Route all log output through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def load_config(path: Optional[Path]) -> GatewayConfig:
    try:
        return Config.load(path).merged
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(2)


async def _with_discovery(config: GatewayConfig, timeout: float, collect: Callable[[Supervisor], Any]) -> Any:
    """Start every backend, wait for discovery, collect results, then shut down."""
    supervisor = Supervisor(config)
    await supervisor.start()
    try:
        if not await supervisor.wait_ready(timeout):
            for backend_id, session in supervisor.sessions().items():
                if session.state is not BackendState.READY:
                    console.print(
                        f"[yellow]{backend_id}: {session.state.value}"
                        f" ({session.last_error or 'no error recorded'})[/yellow]"
                    )
        return collect(supervisor)
    finally:
        await supervisor.stop()


config_option = click.option(
    "--config", "-c", "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file (default: capgate.yaml found upward from cwd, or $CAPGATE_CONFIG)",
)
log_level_option = click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    show_default=True,
)


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """
    capgate - Serve MCP tool servers as HTTP routes.

    \b
    Examples:
        capgate init                 # Write a starter capgate.yaml
        capgate serve                # Start the gateway
        capgate routes               # List routes the backends would yield
        capgate openapi -o api.json  # Write the aggregated API description
    """
    if version:
        console.print(f"capgate v{__version__}")
        return
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False), default=Config.LOCAL_CONFIG_NAME)
def init(path: Path) -> None:
    """Write a starter configuration file."""
    existed = path.exists()
    Config.write_example(path)
    if existed:
        console.print(f"[yellow]{path} already exists, left untouched[/yellow]")
    else:
        console.print(f"[green]Wrote {path}[/green]")


@cli.command()
@config_option
@click.option("--host", default=None, help="Bind address (overrides server.host)")
@click.option("--port", type=int, default=None, help="Port (overrides server.port)")
@log_level_option
def serve(config_path: Optional[Path], host: Optional[str], port: Optional[int], log_level: str) -> None:
    """Start the HTTP gateway."""
    from capgate.server.app import serve as run_server

    configure_logging(log_level)
    config = load_config(config_path)
    backends = config.enabled_backends()
    if not backends:
        console.print("[yellow]No backends configured; the gateway will start empty.[/yellow]")
    run_server(config, host=host, port=port, log_level=log_level)


@cli.command()
@config_option
@click.option("--timeout", type=float, default=15.0, show_default=True, help="Seconds to wait for discovery")
@log_level_option
def routes(config_path: Optional[Path], timeout: float, log_level: str) -> None:
    """Connect to every backend once and list the routes they yield."""
    configure_logging(log_level)
    config = load_config(config_path)
    found, report = asyncio.run(
        _with_discovery(config, timeout, lambda s: (s.registry.list_routes(), s.registry.report()))
    )
    if not found:
        console.print("[dim]No routes discovered.[/dim]")
        return

    table = Table(title=f"Routes ({len(found)})")
    table.add_column("Method", style="cyan")
    table.add_column("Path")
    table.add_column("Backend", style="magenta")
    table.add_column("Operation")
    table.add_column("Summary", style="dim")
    for route in found:
        table.add_row(route.method, route.path, route.backend, route.operation, route.summary)
    console.print(table)

    for backend_id, data in report.items():
        console.print(
            f"  [dim]{backend_id}: {data['routes']} routes ({data['get']} GET, {data['post']} POST)[/dim]"
        )


@cli.command()
@config_option
@click.option("--output", "-o", type=click.Path(path_type=Path, dir_okay=False), default=None)
@click.option("--timeout", type=float, default=15.0, show_default=True, help="Seconds to wait for discovery")
@log_level_option
def openapi(config_path: Optional[Path], output: Optional[Path], timeout: float, log_level: str) -> None:
    """Write the aggregated API description as JSON."""
    configure_logging(log_level)
    config = load_config(config_path)
    document = asyncio.run(
        _with_discovery(
            config, timeout, lambda s: CapabilityPublisher(s.registry, title=config.server.title).render()
        )
    )
    text = json.dumps(document, indent=2)
    if output is None:
        click.echo(text)
    else:
        output.write_text(text + "\n")
        console.print(f"[green]Wrote {len(document['paths'])} route(s) to {output}[/green]")


@cli.command("check-config")
@config_option
def check_config(config_path: Optional[Path]) -> None:
    """Validate configuration and list backends."""
    config = load_config(config_path)
    console.print(f"[green]Configuration OK[/green] ({config.server.host}:{config.server.port})")
    if not config.backends:
        console.print("[dim]No backends configured.[/dim]")
        return
    for backend_id, backend in config.backends.items():
        marker = "[green]on [/green]" if backend.enabled else "[dim]off[/dim]"
        kind = "http " if backend.url else "stdio"
        console.print(
            f"  {marker} [cyan]{backend_id}[/cyan] {kind} {backend.address} "
            f"[dim](concurrency {config.concurrency_for(backend)}, "
            f"timeout {config.timeout_for(backend)}s)[/dim]"
        )


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
