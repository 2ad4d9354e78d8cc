"""CLI: uju config set|show"""

from typing import Optional

import click
from rich.console import Console

from uju.models.protocol import Compression, Format

console = Console()


def _load_config() -> dict:
    from uju.cli.main import _load_config
    return _load_config()


def _save_config(cfg: dict) -> None:
    from uju.cli.main import _save_config
    _save_config(cfg)


@click.group()
def config():
    """Client configuration."""


@config.command("set")
@click.option("--base-url", default=None, help="Broker base URL")
@click.option("--format", "fmt", type=click.Choice([f.value for f in Format]), default=None)
@click.option("--compression", type=click.Choice([c.value for c in Compression]), default=None)
@click.option("--auth", default=None, help="Credentials sent with AUTHENTICATE")
def config_set(base_url: Optional[str], fmt: Optional[str], compression: Optional[str], auth: Optional[str]):
    """Update saved settings."""
    cfg = _load_config()
    updates = {"base_url": base_url, "format": fmt, "compression": compression, "auth": auth}
    cfg.update({k: v for k, v in updates.items() if v is not None})
    _save_config(cfg)
    console.print("[green]Saved.[/green]")


@config.command("show")
def config_show():
    """Print saved settings (credentials masked)."""
    cfg = _load_config()
    if not cfg:
        console.print("[yellow]Nothing configured. Run `uju config set`.[/yellow]")
        return
    for key, value in sorted(cfg.items()):
        if key == "auth":
            value = "****"
        console.print(f"[bold]{key}[/bold]: {value}")
