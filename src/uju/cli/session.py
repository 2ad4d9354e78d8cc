"""CLI: uju connect, uju send, uju listen"""

import json
import uuid
from typing import Optional

import click
from rich.console import Console

from uju.errors import UjuError
from uju.models.envelope import Receive
from uju.models.protocol import SendConfig, SendLaterConfig, SendMethod
from uju.models.query import MetadataQuery, compare
from uju.transport.envelope import envelope_to_dict

console = Console()


def _get_client(socket: bool = False):
    from uju.cli.main import _get_client
    return _get_client(socket)


async def _open_session(client) -> None:
    from uju.cli.main import _open_session
    await _open_session(client)


def _run(coro):
    from uju.cli.main import _run
    return _run(coro)


def _literal(text: str):
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


@click.command("connect")
@click.option("--socket", is_flag=True, help="Use the websocket transport")
def connect_cmd(socket: bool):
    """Start and authenticate a session."""

    async def _connect():
        client = _get_client(socket)
        try:
            with console.status("Starting session..."):
                await _open_session(client)
            console.print(f"[green]Session {client.session_id}[/green] (heartbeat {client.heartbeat_ms}ms)")
        except UjuError as e:
            console.print(f"[red]{e.code}: {e}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()

    _run(_connect())


@click.command("send")
@click.argument("data")
@click.option("--where", "conditions", type=(str, str, str), multiple=True,
              help="Filter leaf: PATH OP VALUE, e.g. /region '$eq' '\"eu\"'")
@click.option("--later", is_flag=True, help="Queue under a group instead of sending now")
@click.option("--group", default=None)
@click.option("--await-reply", is_flag=True)
@click.option("--limit", type=int, default=None)
@click.option("--socket", is_flag=True)
def send_cmd(data: str, conditions, later: bool, group: Optional[str], await_reply: bool,
             limit: Optional[int], socket: bool):
    """Send one message to the clients the filters match."""
    if later and not group:
        raise click.UsageError("--later needs --group")
    try:
        leaves = [compare(op, path, _literal(value)) for path, op, value in conditions]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--where")
    query = MetadataQuery(
        debug={"name": "cli"},
        filter=leaves,
        select={"limit": limit} if limit is not None else None,
    )

    async def _send():
        client = _get_client(socket)
        try:
            await _open_session(client)
            if later:
                ack = await client.send(_literal(data), SendMethod.LATER, SendLaterConfig(group=group), query)
            else:
                ack = await client.send(
                    _literal(data), SendMethod.IMMEDIATE, SendConfig(nonce=uuid.uuid4().hex, await_reply=await_reply), query,
                )
            console.print(f"[green]{ack.message or 'sent'}[/green]")
            if await_reply:
                for envelope in await client.fetch_messages():
                    if isinstance(envelope, Receive):
                        click.echo(json.dumps(envelope_to_dict(envelope)))
        except UjuError as e:
            console.print(f"[red]{e.code}: {e}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()

    _run(_send())


@click.command("listen")
@click.option("--interval", default=1.0, type=float, help="Seconds between empty polls")
@click.option("--count", default=None, type=int, help="Stop after this many envelopes")
@click.option("--socket", is_flag=True)
def listen_cmd(interval: float, count: Optional[int], socket: bool):
    """Print inbound envelopes as JSON lines (Ctrl+C to exit)."""

    async def _listen():
        client = _get_client(socket)
        try:
            await _open_session(client)
            console.print(f"[dim]Session: {client.session_id}[/dim]")
            poller = client.poll(interval=interval)
            seen = 0
            async for envelope in poller.messages():
                click.echo(json.dumps(envelope_to_dict(envelope)))
                seen += 1
                if count is not None and seen >= count:
                    break
            if poller.error is not None:
                console.print(f"[red]poller stopped: {poller.error}[/red]")
        except UjuError as e:
            console.print(f"[red]{e.code}: {e}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()

    try:
        _run(_listen())
    except KeyboardInterrupt:
        pass
