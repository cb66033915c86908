"""Command-line interface for send-guard.

The CLI talks to a running instance through its REST API, except ``serve``
which starts one.

Usage:
    send-guard serve --host 0.0.0.0 --port 8000
    send-guard status
    send-guard send acc-1 "+39 333 1234567" --text "hello" --priority high
    send-guard message <message-id>
    send-guard clear --yes
    send-guard config show
    send-guard config set messages_per_minute=5 typing_delay_simulation=false
    send-guard health [acc-1]
    send-guard attention
    send-guard warmup acc-1

The server URL and token come from ``--url``/``--token`` or the ``SG_URL`` and
``SG_TOKEN`` environment variables.
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .client import GuardClient, GuardClientError

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "healthy": "green",
    "warning": "yellow",
    "critical": "red",
    "blocked": "bold red",
    "pending": "yellow",
    "processing": "cyan",
    "sent": "green",
    "failed": "red",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


def _styled(value: str) -> str:
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _format_ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


def make_client(ctx: click.Context) -> GuardClient:
    return GuardClient(ctx.obj["url"], token=ctx.obj["token"])


def _call(ctx: click.Context, action: Callable[[GuardClient], Awaitable[Any]]) -> Any:
    """Run ``action`` against a fresh client, exiting with 1 on API errors."""

    async def _run():
        client = make_client(ctx)
        try:
            return await action(client)
        finally:
            await client.close()

    try:
        return run_async(_run())
    except GuardClientError as exc:
        detail = exc.detail.get("error", exc.detail) if isinstance(exc.detail, dict) else exc.detail
        print_error(f"{detail} (HTTP {exc.status})")
        sys.exit(1)
    except OSError as exc:
        print_error(f"cannot reach {ctx.obj['url']}: {exc}")
        sys.exit(1)


def _parse_option(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise click.BadParameter(f"expected KEY=VALUE, got '{item}'")
    key, raw = item.split("=", 1)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return key.strip(), value


def _health_table(devices: list, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Account", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Status")
    table.add_column("Msg/h", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Warm-up")
    table.add_column("Warnings")
    for device in devices:
        metrics = device.get("metrics", {})
        table.add_row(
            device["account_id"],
            str(device["score"]),
            _styled(device["status"]),
            str(metrics.get("messages_per_hour", 0)),
            f"{metrics.get('success_rate', 100):.0f}%",
            "yes" if metrics.get("warmup_phase") else "no",
            "\n".join(device.get("warnings", [])) or "-",
        )
    return table


@click.group()
@click.version_option(__version__)
@click.option("--url", envvar="SG_URL", default="http://localhost:8000", show_default=True, help="Server URL.")
@click.option("--token", envvar="SG_TOKEN", default=None, help="API or admin token.")
@click.pass_context
def main(ctx: click.Context, url: str, token: Optional[str]) -> None:
    """send-guard: paced, health-aware message dispatch."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["token"] = token


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
def serve(host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Start the server in the foreground."""
    import uvicorn

    from .config_loader import load_settings
    from .errors import ConfigError

    try:
        settings = load_settings()
    except ConfigError as exc:
        print_error(f"invalid configuration: {exc.message}")
        sys.exit(1)
    uvicorn.run(
        "send_guard.server:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@main.command("status")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show queue depth and scheduler state."""
    data = _call(ctx, lambda c: c.dashboard())
    if as_json:
        print_json(data)
        return
    queue = data["queue"]
    alerts = data["alerts"]
    console.print(f"\n[bold cyan]Queue[/bold cyan]  ({'active' if queue['active'] else '[yellow]suspended[/yellow]'})")
    console.print(f"  Pending:     {queue['pending']}")
    console.print(f"  Processing:  {queue['processing']}")
    console.print(f"  Total:       {queue['total_queued']}")
    health = data["health"]
    console.print("\n[bold cyan]Accounts[/bold cyan]")
    console.print(f"  Total:       {health['total_devices']}")
    console.print(f"  Average:     {health['average_score'] if health['average_score'] is not None else '-'}")
    console.print(
        f"  Statuses:    {health['healthy']} healthy, {health['warning']} warning, "
        f"{health['critical']} critical, {health['blocked']} blocked"
    )
    if alerts["devices_needing_attention"] or alerts["queue_backlog"]:
        console.print("\n[bold red]Alerts[/bold red]")
        if alerts["devices_needing_attention"]:
            console.print(f"  {alerts['devices_needing_attention']} account(s) need attention")
        if alerts["queue_backlog"]:
            console.print("  queue backlog above threshold")
    console.print()


@main.command("send")
@click.argument("account_id")
@click.argument("to")
@click.option("--text", "-t", help="Text body (caption for media).")
@click.option("--media", "media_path", type=click.Path(exists=True, dir_okay=False), help="File to send as media.")
@click.option("--mimetype", default=None, help="Media MIME type (default: image/jpeg).")
@click.option("--priority", type=click.Choice(["high", "normal", "low"]), default=None)
@click.option("--quote", "quoted_message_id", default=None, help="Id of the message to quote.")
@click.pass_context
def send(
    ctx: click.Context,
    account_id: str,
    to: str,
    text: Optional[str],
    media_path: Optional[str],
    mimetype: Optional[str],
    priority: Optional[str],
    quoted_message_id: Optional[str],
) -> None:
    """Queue a message for ACCOUNT_ID to recipient TO."""
    extra: dict[str, Any] = {}
    if media_path:
        import base64
        from pathlib import Path

        path = Path(media_path)
        media: dict[str, Any] = {"data": base64.b64encode(path.read_bytes()).decode(), "filename": path.name}
        if mimetype:
            media["mimetype"] = mimetype
        extra["kind"] = "media"
        extra["media"] = media
    if quoted_message_id:
        extra["quoted_message_id"] = quoted_message_id
    result = _call(ctx, lambda c: c.send(account_id, to, text=text, priority=priority, **extra))
    print_success(f"Queued message {result['messageId']}")


@main.command("message")
@click.argument("message_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def message(ctx: click.Context, message_id: str, as_json: bool) -> None:
    """Show the status of a queued or completed message."""
    data = _call(ctx, lambda c: c.message(message_id))
    if as_json:
        print_json(data)
        return
    console.print(f"\n[bold cyan]Message: {message_id}[/bold cyan]\n")
    console.print(f"  Account:    {data['account_id']}")
    console.print(f"  Recipient:  {data['recipient']}")
    console.print(f"  Kind:       {data['kind']}  priority={data['priority']}")
    console.print(f"  Status:     {_styled(data['status'])}")
    console.print(f"  Attempts:   {data['attempts']}/{data['max_attempts']}")
    console.print(f"  Enqueued:   {_format_ts(data.get('enqueued_at'))}")
    if data.get("next_eligible_at"):
        console.print(f"  Next try:   {_format_ts(data['next_eligible_at'])}")
    if data.get("sent_at"):
        console.print(f"  Sent:       {_format_ts(data['sent_at'])}")
    if data.get("last_error"):
        console.print(f"  Last error: [red]{data['last_error']}[/red]")
    console.print()


@main.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def clear(ctx: click.Context, yes: bool) -> None:
    """Drop every pending and processing message (admin token required)."""
    if not yes and not click.confirm("Remove every queued message?"):
        console.print("Aborted.")
        return
    removed = _call(ctx, lambda c: c.clear())
    print_success(f"Cleared {removed} message(s)")


@main.group("config")
def config() -> None:
    """Show or change the queue configuration."""


@config.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    data = _call(ctx, lambda c: c.get_config())
    if as_json:
        print_json(data)
        return
    table = Table(title="Queue configuration")
    table.add_column("Option", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


@config.command("set")
@click.argument("options", nargs=-1, required=True)
@click.pass_context
def config_set(ctx: click.Context, options: tuple[str, ...]) -> None:
    """Apply KEY=VALUE options (admin token required)."""
    updates = dict(_parse_option(item) for item in options)
    data = _call(ctx, lambda c: c.update_config(**updates))
    print_success("Configuration updated: " + ", ".join(f"{k}={data[k]}" for k in updates if k in data))


@main.command("health")
@click.argument("account_id", required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def health(ctx: click.Context, account_id: Optional[str], as_json: bool) -> None:
    """Show health of ACCOUNT_ID, or of every known account."""
    data = _call(ctx, lambda c: c.health(account_id))
    if as_json:
        print_json(data)
        return
    devices = [data] if account_id else data
    if not devices:
        console.print("[dim]No account activity recorded yet.[/dim]")
        return
    console.print(_health_table(devices, "Account health"))


@main.command("attention")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def attention(ctx: click.Context, as_json: bool) -> None:
    """List accounts that are not healthy, worst first."""
    devices = _call(ctx, lambda c: c.attention())
    if as_json:
        print_json(devices)
        return
    if not devices:
        print_success("All accounts healthy")
        return
    console.print(_health_table(devices, "Accounts needing attention"))


@main.command("warmup")
@click.argument("account_id")
@click.pass_context
def warmup(ctx: click.Context, account_id: str) -> None:
    """Start or restart the warm-up ramp of ACCOUNT_ID (admin token required)."""
    data = _call(ctx, lambda c: c.warmup(account_id))
    print_success(f"Warm-up started for {account_id} (score capped at {data['score']})")


if __name__ == "__main__":
    main()
