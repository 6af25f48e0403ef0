"""
Main CLI interface for the Gmail MCP bridge.

Runs the bridge server and offers one-shot commands for checking and
connecting a user's Gmail account.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import click
from rich.console import Console
from rich.table import Table

from gmail_mcp import __version__
from gmail_mcp.cli.helpers import handle_errors
from gmail_mcp.core.gmail_service import GmailToolService
from gmail_mcp.server import GmailMCPServer, build_cache
from gmail_mcp.utils.config import Config, load_config
from gmail_mcp.utils.logging import get_logger, setup_logging, setup_logging_from_config

console = Console()
logger = get_logger(__name__)

T = TypeVar("T")


class CLIContext:
    """CLI context for passing state between commands."""

    def __init__(self):
        self.config: Optional[Config] = None

    def get_config(self) -> Config:
        if self.config is None:
            self.config = load_config()
        return self.config

    def build_service(self) -> GmailToolService:
        """Fresh service and cache for one command invocation."""
        config = self.get_config()
        return GmailToolService(build_cache(config), config)


cli_context = CLIContext()


def run_with_service(action: Callable[[GmailToolService], Awaitable[T]]) -> T:
    """Run ``action`` against a service and always dispose its cache."""

    async def runner() -> T:
        service = cli_context.build_service()
        try:
            return await action(service)
        finally:
            await service.shutdown()

    return asyncio.run(runner())


@click.group()
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option(
    "--config-file", "-c",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="TOML configuration file (repeatable, later files win)",
)
@click.version_option(version=__version__, prog_name="Gmail MCP Bridge")
def cli(debug: bool, verbose: bool, config_file: Tuple[str, ...]):
    """
    Gmail tools from Composio, exposed through an MCP server.

    Identify users with --user; the configured default user is used otherwise.
    """
    config = load_config(config_files=list(config_file) if config_file else None)
    cli_context.config = config

    if debug or verbose:
        setup_logging(
            level="DEBUG" if debug else config.logging.level,
            console_level="DEBUG" if debug else "INFO",
            log_file=config.get_log_file(),
            format_type=config.logging.format_type,
            enable_rich=config.logging.enable_rich,
            suppress_http=config.logging.suppress_http,
        )
    else:
        setup_logging_from_config(config)


def _user_option(func):
    return click.option("--user", "-u", "user_id", default=None, help="User identifier")(func)


@cli.command()
@click.option("--host", "-h", default=None, help="Bind host (overrides config)")
@click.option("--port", "-p", type=int, default=None, help="Bind port (overrides config)")
@handle_errors
def serve(host: Optional[str], port: Optional[int]):
    """Run the MCP bridge server until interrupted."""
    config = cli_context.get_config()
    updates = {k: v for k, v in {"host": host, "port": port}.items() if v is not None}
    if updates:
        config = config.model_copy(update={"server": config.server.model_copy(update=updates)})
    config.composio.require()

    server = GmailMCPServer(config)
    base = f"http://{config.server.host}:{config.server.port}"
    console.print(f"[blue]🚀 Starting {config.server.name}[/blue]")
    console.print(f"   MCP endpoint: [cyan]{base}{config.server.http_path}[/cyan]")
    console.print(f"   OAuth callback: [cyan]{base}/oauth/callback?user_id=<user>[/cyan]")
    console.print("[dim]Press Ctrl+C to stop[/dim]")

    asyncio.run(server.run_forever())
    console.print("[green]✅ Server closed[/green]")


@cli.command()
@_user_option
@handle_errors
def status(user_id: Optional[str]):
    """Show a user's Gmail connection status."""

    async def check(service: GmailToolService):
        user = service.resolve_user(user_id)
        return user, await service.get_auth_status(user)

    user, auth_status = run_with_service(check)
    if auth_status.connected:
        console.print(f"[green]✅ Gmail connected for {user}[/green] (account {auth_status.connection_id})")
    else:
        console.print(f"[yellow]⚠️  Gmail not connected for {user}[/yellow]")
        console.print("[dim]Run 'gmail-mcp connect' to authorize Gmail access[/dim]")


@cli.command()
@_user_option
@handle_errors
def connect(user_id: Optional[str]):
    """Start the Gmail OAuth flow and print the authorization URL."""

    async def initiate(service: GmailToolService):
        return await service.initiate_oauth(service.resolve_user(user_id))

    initiation = run_with_service(initiate)
    console.print("[blue]🔗 Open this URL to connect Gmail:[/blue]")
    click.echo(initiation.redirect_url)


@cli.command()
@_user_option
@click.option(
    "--output-format", "-o",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format",
)
@handle_errors
def tools(user_id: Optional[str], output_format: str):
    """List the tools available to a user."""

    async def fetch(service: GmailToolService):
        return await service.list_tools(service.resolve_user(user_id))

    tool_list = run_with_service(fetch)

    if output_format == "json":
        click.echo(json.dumps([tool.to_mcp() for tool in tool_list], indent=2))
        return

    table = Table(
        title=f"Gmail Tools ({len(tool_list)} total)",
        show_header=True,
        header_style="bold cyan",
        title_style="bold cyan",
    )
    table.add_column("Name", style="green")
    table.add_column("Description", style="dim")
    for tool in tool_list:
        description = tool.description
        table.add_row(tool.name, description[:77] + "..." if len(description) > 80 else description)

    console.print("")
    console.print(table)


@cli.command("config")
def show_config():
    """Print the effective configuration (secrets masked)."""
    data: Any = cli_context.get_config().redacted()
    click.echo(json.dumps(data, indent=2, default=str))


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
