"""CLI application — Click-based command group for Polybot.

  polybot serve          run the bot (webhook listener + background loops)
  polybot gencert --ip   issue the self-signed certificate pair
  polybot webhook-info   show what Telegram has registered for the bot
  polybot commands       list the command table
"""

from __future__ import annotations

import asyncio
import functools
import json
import sys
from typing import Any

import aiohttp
import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from polybot import __version__
from polybot.commands import Transition
from polybot.config import (
    LLMConfig,
    MonitorConfig,
    PolybotConfig,
    ServerConfig,
    WeatherConfig,
    find_config,
    load_config_file,
)
from polybot.errors import PolybotError


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def _file_section(name: str) -> dict[str, Any]:
    path = find_config()
    if path is None:
        return {}
    section = load_config_file(path).get(name, {})
    return section if isinstance(section, dict) else {}


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(2)


@click.group()
@click.version_option(__version__, prog_name="polybot")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, no_color: bool) -> None:
    """Polybot - a self-hosted Telegram webhook bot."""
    ctx.ensure_object(dict)
    ctx.obj["console"] = Console(no_color=no_color)


@cli.command("serve")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity",
)
def serve_cmd(log_level: str) -> None:
    """Run the bot until SIGINT/SIGTERM."""
    from polybot.main import run_service

    sys.exit(run_service(log_level))


@cli.command("gencert")
@click.option("--ip", "ip", required=True, help="Public IP the certificate is issued for")
@click.pass_context
def gencert_cmd(ctx: click.Context, ip: str) -> None:
    """Issue a self-signed certificate for IP at the configured paths."""
    from polybot.services.certificates import CertificateIssuer

    try:
        server = ServerConfig(**_file_section("server"))
        monitor = MonitorConfig(**_file_section("monitor"))
    except (ValidationError, PolybotError) as e:
        _fail(str(e))
    issuer = CertificateIssuer(
        server.pubkey_path.expanduser().resolve(),
        server.privkey_path.expanduser().resolve(),
        organization=monitor.cert_org,
        days=monitor.cert_days,
    )
    try:
        issuer.write(ip)
    except PolybotError as e:
        _fail(str(e))
    console: Console = ctx.obj["console"]
    console.print(f"certificate: {issuer.pubkey_path}")
    console.print(f"private key: {issuer.privkey_path}")


@cli.command("webhook-info")
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.pass_context
@async_cmd
async def webhook_info_cmd(ctx: click.Context, json_output: bool) -> None:
    """Show the webhook registration Telegram holds for this bot."""
    from polybot.services.telegram import TelegramClient

    try:
        config = PolybotConfig()
    except (ValidationError, PolybotError) as e:
        _fail(str(e))
    try:
        async with TelegramClient(config.bot) as telegram:
            status = await telegram.query_webhook_status()
    except PolybotError as e:
        _fail(str(e))

    if json_output:
        click.echo(json.dumps(status.model_dump(), indent=2))
        return
    table = Table(title="Webhook", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for field, value in status.model_dump().items():
        table.add_row(field, "-" if value in (None, "") else str(value))
    ctx.obj["console"].print(table)


@cli.command("commands")
@click.pass_context
@async_cmd
async def commands_cmd(ctx: click.Context) -> None:
    """List the registered bot commands."""
    from polybot.main import build_table

    try:
        monitor = MonitorConfig(**_file_section("monitor"))
        weather = WeatherConfig(**_file_section("weather"))
        llm = LLMConfig(**_file_section("llm"))
    except (ValidationError, PolybotError) as e:
        _fail(str(e))
    async with aiohttp.ClientSession() as http:
        command_table = build_table(http, monitor, weather, llm)

    table = Table(title="Commands")
    table.add_column("Command", style="bold", no_wrap=True)
    table.add_column("Description")
    table.add_column("Mode", no_wrap=True)
    for token, description in command_table.describe():
        descriptor = command_table[token]
        mode = "" if descriptor.transition is Transition.NONE else descriptor.transition.value
        if token == command_table.conversation_default:
            mode = "chat default"
        table.add_row(token, description, mode)
    ctx.obj["console"].print(table)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
