"""tabrelay command line"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import httpx
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import TabRelayConfig, load_config
from .logging import setup_logging

console = Console()
app = typer.Typer(help="CDP relay between automation clients and a browser tab", no_args_is_help=True)

_state: dict[str, Optional[str]] = {"config_path": None, "log_level": None}


def _load(port: Optional[int] = None) -> TabRelayConfig:
    config = load_config(_state["config_path"])
    if port is not None:
        config = config.model_copy(update={"port": port})
    setup_logging(_state["log_level"] or config.log_level)
    return config


@app.callback()
def main(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a JSON/JSON5 config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
):
    """tabrelay"""
    load_dotenv()
    _state["config_path"] = str(config_path) if config_path else None
    _state["log_level"] = log_level


@app.command("relay")
def relay(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Relay port (default 19988)"),
):
    """Run the relay server"""
    from .relay import RelayServer

    config = _load(port)
    server = RelayServer(config)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        console.print("\n[yellow]Relay stopped[/yellow]", highlight=False)


@app.command("bridge")
def bridge(
    chrome_host: Optional[str] = typer.Option(None, "--chrome-host", help="Chrome remote debugging host"),
    chrome_port: Optional[int] = typer.Option(None, "--chrome-port", help="Chrome remote debugging port"),
    attach_active: bool = typer.Option(False, "--attach-active", help="Attach the active tab once connected"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Relay port"),
):
    """Run the bridge against a Chrome started with --remote-debugging-port"""
    from .bridge import Bridge, RemoteDebuggingBackend

    config = _load(port)
    settings = config.bridge.model_copy(update={
        key: value
        for key, value in {
            "chrome_host": chrome_host,
            "chrome_port": chrome_port,
            "attach_active_tab": attach_active or None,
        }.items()
        if value is not None
    })
    config = config.model_copy(update={"bridge": settings})

    async def run() -> None:
        backend = RemoteDebuggingBackend(settings.chrome_host, settings.chrome_port)
        instance = Bridge(config, backend)
        await instance.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await instance.stop()
            await backend.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Bridge stopped[/yellow]", highlight=False)


@app.command("mcp")
def mcp():
    """Run the MCP tool server on stdio"""
    from .mcp_server import create_server

    config = _load()
    # stdout belongs to the MCP transport
    create_server(config).run()


@app.command("status")
def status(
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Relay port"),
):
    """Show relay status"""
    config = _load(port)
    try:
        response = httpx.get(f"{config.http_url}/status", timeout=config.connector.probe_timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        console.print(f"[red]Relay not reachable at {config.http_url}:[/red] {e}")
        raise typer.Exit(1)

    data = response.json()
    if json_output:
        console.print_json(json.dumps(data))
        return

    table = Table(title=f"Relay - {config.http_url}")
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("targets")
def targets(
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Relay port"),
):
    """List attached targets"""
    config = _load(port)
    try:
        response = httpx.get(f"{config.http_url}/json/list", timeout=config.connector.probe_timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        console.print(f"[red]Relay not reachable at {config.http_url}:[/red] {e}")
        raise typer.Exit(1)

    entries = response.json()
    if json_output:
        console.print_json(json.dumps(entries))
        return
    if not entries:
        console.print("[yellow]No attached targets[/yellow]")
        return

    table = Table(title="Attached Targets")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Tab", style="green")
    table.add_column("Title", style="white")
    table.add_column("URL", style="blue")
    for entry in entries:
        table.add_row(
            str(entry.get("sessionId", "-")),
            str(entry.get("tabId", "-")),
            entry.get("title") or "-",
            entry.get("url") or "-",
        )
    console.print(table)


@app.command("version")
def version():
    """Show version"""
    console.print(f"tabrelay {__version__}")


__all__ = ["app"]
