"""
uju CLI (`uju` command).

Commands:
  uju config set|show     Broker URL, wire format and credentials
  uju connect             Start and authenticate a session, print its details
  uju send <data>         Send one message (immediate or later)
  uju listen              Poll the mailbox and print envelopes
"""

import asyncio
import json
from pathlib import Path

try:
    import click
    from rich.console import Console
except ImportError:
    raise SystemExit("CLI requires extras: pip install uju-client[cli]")

from uju.client import AsyncSessionClient
from uju.models.protocol import Compression, Format, SessionConfig
from uju.transport.http import DEFAULT_BASE_URL, HttpTransport
from uju.transport.websocket import WebSocketTransport

console = Console()
CONFIG_FILE = Path.home() / ".uju" / "config.json"


def _load_config() -> dict:
    try:
        return json.loads(CONFIG_FILE.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return {}


def _save_config(cfg: dict) -> None:
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(cfg, indent=2))


def _get_client(socket: bool = False) -> AsyncSessionClient:
    cfg = _load_config()
    base_url = cfg.get("base_url", DEFAULT_BASE_URL)
    transport = WebSocketTransport(base_url) if socket else HttpTransport(base_url)
    return AsyncSessionClient(
        config=SessionConfig(
            format=Format(cfg.get("format", Format.JSON.value)),
            compression=Compression(cfg.get("compression", Compression.NONE.value)),
        ),
        transport=transport,
        heartbeat=False,
    )


async def _open_session(client: AsyncSessionClient) -> None:
    cfg = _load_config()
    if not cfg.get("auth"):
        console.print("[red]No credentials. Run `uju config set --auth <token>` first.[/red]")
        raise SystemExit(1)
    await client.start_session()
    await client.authenticate(cfg["auth"])


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
def main():
    """uju CLI. Talk to a uju message broker."""


from uju.cli.config import config
from uju.cli.session import connect_cmd, listen_cmd, send_cmd

main.add_command(config)
main.add_command(connect_cmd)
main.add_command(send_cmd)
main.add_command(listen_cmd)


if __name__ == "__main__":
    main()
