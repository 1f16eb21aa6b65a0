"""Command-line client for the talkgate daemon."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from talkgate.audit import read_records
from talkgate.config import TalkgateConfig
from talkgate.ipc.client import IPCClient
from talkgate.ipc.messages import IPCReply, MessageType, ReplyType

console = Console()


class TalkgateCtl:
    """Thin wrapper around one IPC connection per command."""

    def __init__(self, socket_path: Path, timeout: float = 5.0):
        self.socket_path = socket_path
        self.timeout = timeout

    async def call(self, type: MessageType, payload: Optional[Dict[str, Any]] = None) -> IPCReply:
        async with IPCClient(self.socket_path, sender="tgctl", timeout=self.timeout) as client:
            return await client.request(type, payload)

    async def pending_prompt_id(self, client: IPCClient) -> Optional[str]:
        reply = await client.request(MessageType.STATUS_REQUEST)
        pending = reply.data.get("pending_prompt")
        return pending["id"] if pending else None

    async def answer(self, type: MessageType, prompt_id: Optional[str]) -> IPCReply:
        async with IPCClient(self.socket_path, sender="tgctl", timeout=self.timeout) as client:
            if prompt_id is None:
                prompt_id = await self.pending_prompt_id(client)
                if prompt_id is None:
                    return IPCReply(type=ReplyType.ERROR, success=False, message="nothing is pending")
            return await client.request(type, {"prompt_id": prompt_id})


def _run(coro):
    try:
        return asyncio.run(coro)
    except (FileNotFoundError, ConnectionRefusedError):
        console.print("[red]talkgate is not running[/red] (no socket to connect to)")
        sys.exit(1)
    except asyncio.TimeoutError:
        console.print("[red]talkgate did not answer in time[/red]")
        sys.exit(1)


def _report(reply: IPCReply) -> None:
    if reply.success:
        console.print(f"[green]✓[/green] {reply.message or 'ok'}")
        return
    reason = f" [dim]({reply.reason})[/dim]" if reply.reason else ""
    console.print(f"[red]✗[/red] {reply.message or 'refused'}{reason}")
    sys.exit(1)


def _print_prompt(data: Dict[str, Any]) -> None:
    deadline = datetime.fromtimestamp(data["deadline"]).strftime("%H:%M:%S")
    console.print(f"\n[bold yellow]{data['kind'].title()} pending[/bold yellow] [dim]{data['id']} until {deadline}[/dim]")
    console.print(f"  {data['intent']}")
    for item in data.get("candidates", []):
        console.print(f"  [cyan]{item['index']}[/cyan]. {item['label']}")


@click.group()
@click.version_option(version="0.1.0")
@click.option("--socket", "socket_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Path to the talkgate socket")
@click.option("--timeout", default=5.0, show_default=True, help="Seconds to wait for a reply")
@click.pass_context
def cli(ctx, socket_path: Optional[Path], timeout: float):
    """tgctl - control and inspect the talkgate voice command daemon."""
    config = TalkgateConfig()
    ctx.obj = TalkgateCtl(socket_path or config.ipc_socket_path, timeout)


@cli.command()
@click.pass_obj
def status(ctl: TalkgateCtl):
    """Show pipeline status and the pending prompt, if any."""
    reply = _run(ctl.call(MessageType.STATUS_REQUEST))
    if not reply.success:
        _report(reply)
    data = reply.data

    table = Table(title="talkgate", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Listening", "yes" if data.get("listening") else "no")
    table.add_row("Paused", "yes" if data.get("paused") else "no")
    table.add_row("Speaking", "yes" if data.get("muted") else "no")
    table.add_row("Queued transcripts", str(data.get("queue_depth", 0)))
    table.add_row("Actions in flight", str(data.get("in_flight_actions", 0)))
    table.add_row("Clients", str(data.get("clients", 0)))
    for key, value in sorted((data.get("stats") or {}).items()):
        table.add_row(f"  {key}", str(value))
    console.print(table)

    if data.get("pending_prompt"):
        _print_prompt(data["pending_prompt"])


@cli.command()
@click.argument("prompt_id", required=False)
@click.pass_obj
def confirm(ctl: TalkgateCtl, prompt_id: Optional[str]):
    """Confirm the pending high-risk command."""
    _report(_run(ctl.answer(MessageType.CONFIRM, prompt_id)))


@cli.command()
@click.argument("prompt_id", required=False)
@click.pass_obj
def deny(ctl: TalkgateCtl, prompt_id: Optional[str]):
    """Deny the pending high-risk command."""
    _report(_run(ctl.answer(MessageType.DENY, prompt_id)))


@cli.command()
@click.argument("prompt_id", required=False)
@click.pass_obj
def cancel(ctl: TalkgateCtl, prompt_id: Optional[str]):
    """Cancel whatever prompt is pending."""
    _report(_run(ctl.answer(MessageType.CANCEL, prompt_id)))


@cli.command()
@click.argument("index", type=click.IntRange(min=1))
@click.option("--prompt", "prompt_id", default=None, help="Prompt id (defaults to the pending one)")
@click.pass_obj
def select(ctl: TalkgateCtl, index: int, prompt_id: Optional[str]):
    """Pick candidate INDEX from the pending selection prompt."""

    async def run():
        async with IPCClient(ctl.socket_path, sender="tgctl", timeout=ctl.timeout) as client:
            target = prompt_id or await ctl.pending_prompt_id(client)
            if target is None:
                return IPCReply(type=ReplyType.ERROR, success=False, message="nothing is pending")
            return await client.request(MessageType.SELECT, {"prompt_id": target, "index": index})

    _report(_run(run()))


@cli.command()
@click.pass_obj
def pause(ctl: TalkgateCtl):
    """Stop acting on voice commands."""
    _report(_run(ctl.call(MessageType.CONTROL, {"action": "pause"})))


@cli.command()
@click.pass_obj
def resume(ctl: TalkgateCtl):
    """Resume acting on voice commands."""
    _report(_run(ctl.call(MessageType.CONTROL, {"action": "resume"})))


@cli.command()
@click.pass_obj
def reload(ctl: TalkgateCtl):
    """Reload configuration in the running daemon."""
    _report(_run(ctl.call(MessageType.RELOAD_CONFIG)))


@cli.command()
@click.argument("text", nargs=-1, required=True)
@click.option("--confidence", "-c", type=click.FloatRange(0.0, 1.0), default=1.0, show_default=True,
              help="Recognizer confidence to report")
@click.pass_obj
def say(ctl: TalkgateCtl, text, confidence: float):
    """Inject TEXT as if it had been recognized from speech."""
    _report(_run(ctl.call(MessageType.TRANSCRIPT, {"text": " ".join(text), "confidence": confidence})))


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Number of records to show")
@click.option("--path", "audit_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Audit log file (defaults to the configured one)")
def audit(limit: int, audit_path: Optional[Path]):
    """Show the most recent audit records."""
    path = audit_path or TalkgateConfig().audit_path
    records = read_records(path, limit)
    if not records:
        console.print(f"[yellow]No audit records in {path}[/yellow]")
        return

    table = Table(title=f"Audit log ({path})")
    table.add_column("Time", style="dim")
    table.add_column("Command")
    table.add_column("Conf.", justify="right")
    table.add_column("Source")
    table.add_column("Outcome")
    table.add_column("Reason / detail", style="dim")
    colors = {"executed": "green", "rejected": "red", "denied": "yellow", "expired": "yellow", "cancelled": "yellow"}
    for record in records:
        outcome = record.outcome.value
        table.add_row(
            record.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S"),
            record.command,
            f"{record.confidence:.2f}",
            record.source,
            f"[{colors.get(outcome, 'white')}]{outcome}[/{colors.get(outcome, 'white')}]",
            " ".join(filter(None, [record.reason, record.detail])),
        )
    console.print(table)


@cli.command()
@click.option("--interactive/--no-interactive", "-i", default=False,
              help="Answer prompts from this terminal")
@click.pass_obj
def watch(ctl: TalkgateCtl, interactive: bool):
    """Follow prompts and pipeline events; optionally answer them here."""

    async def answer(client: IPCClient, data: Dict[str, Any]) -> None:
        if data["kind"] == "selection":
            choice = await asyncio.to_thread(Prompt.ask, "Pick a number (or 'c' to cancel)", default="c")
            if choice.strip().isdigit():
                reply = await client.request(MessageType.SELECT, {"prompt_id": data["id"], "index": int(choice)})
            else:
                reply = await client.request(MessageType.SELECT, {"prompt_id": data["id"], "cancelled": True})
        else:
            choice = await asyncio.to_thread(Prompt.ask, "Confirm?", choices=["confirm", "deny", "cancel"], default="cancel")
            reply = await client.request(MessageType(choice), {"prompt_id": data["id"]})
        console.print(f"  -> {reply.message}")

    async def run():
        async with IPCClient(ctl.socket_path, sender="tgctl-watch", timeout=ctl.timeout) as client:
            reply = await client.request(MessageType.SUBSCRIBE)
            console.print("[dim]Watching talkgate. Ctrl+C to exit.[/dim]")
            if reply.data.get("pending_prompt"):
                _print_prompt(reply.data["pending_prompt"])
            async for event in client.events():
                if event.type in (ReplyType.CONFIRMATION_REQUEST, ReplyType.SELECTION_REQUEST):
                    _print_prompt(event.data)
                    if interactive:
                        await answer(client, event.data)
                elif event.type is ReplyType.PROMPT_RESOLVED:
                    console.print(f"[dim]{event.data['kind']} {event.data['id']}: {event.data['state']} "
                                  f"via {event.data.get('resolved_by')}[/dim]")
                else:
                    console.print(f"[dim]{event.message}[/dim] {event.data}")
            console.print("[yellow]Connection closed by talkgate[/yellow]")

    try:
        _run(run())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped watching[/dim]")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
