# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the inbound relay.

This module drives the relay directly, without going through the HTTP API.
Commands open the configured database, run one operation and exit.

Usage:
    inbound-relay parse message.eml
    inbound-relay build message.json -o message.eml
    inbound-relay receive message.eml --recipient support@example.com
    inbound-relay endpoints add ops --url https://hooks.example.com/in --format slack
    inbound-relay endpoints list
    inbound-relay routes add @example.com ops
    inbound-relay schedule add --from news@example.com --to reader@example.org \\
        --subject "Digest" --text "..." --at "tomorrow at 9am" --tz Europe/Rome
    inbound-relay schedule list --status scheduled
    inbound-relay schedule cancel 3f2a...
    inbound-relay process-due
    inbound-relay serve --port 8000

Global options ``--config`` and ``--db`` override ``IRL_CONFIG`` and the
configured database path.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config_loader import RelaySettings, load_settings
from .core import InboundRelayCore
from .errors import RelayError
from .mime_builder import build
from .models import OutboundMessage, ScheduleRequest, WebhookFormat
from .parser import parse

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {escape(message)}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _settings(ctx: click.Context) -> RelaySettings:
    return ctx.obj["settings"]


def with_core(ctx: click.Context, action: Callable[[InboundRelayCore], Awaitable[Any]]) -> Any:
    """Run ``action`` against an initialized core, exiting with status 1 on relay errors."""

    async def _run():
        core = InboundRelayCore.from_settings(_settings(ctx))
        await core.init()
        try:
            return await action(core)
        finally:
            await core.stop()

    try:
        return run_async(_run())
    except (RelayError, ValidationError) as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.version_option(__version__)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="INI configuration file (default: IRL_CONFIG or config.ini).")
@click.option("--db", "db_path", default=None, help="SQLite database path.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """Inbound email relay: parse, route, deliver and schedule email."""
    settings = load_settings(config_path)
    if db_path:
        settings.db_path = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# ============================================================================
# Messages
# ============================================================================

@main.command("parse")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Output the canonical email as JSON.")
def parse_command(file: str, as_json: bool) -> None:
    """Parse a raw message file into the canonical email."""
    try:
        email = parse(Path(file).read_bytes())
    except RelayError as exc:
        print_error(str(exc))
        sys.exit(1)

    if as_json:
        data = email.to_wire()
        data.pop("raw", None)
        print_json(data)
        return

    console.print(f"\n[bold cyan]{escape(email.subject or '(no subject)')}[/bold cyan]\n")
    console.print(f"  Message-ID:  {escape(email.message_id)}")
    console.print(f"  From:        {escape(email.from_.display_text) if email.from_ else '-'}")
    console.print(f"  To:          {escape(email.to.display_text) if email.to else '-'}")
    console.print(f"  Date:        {email.date.isoformat() if email.date else '-'}")
    console.print(f"  In-Reply-To: {escape(email.in_reply_to or '-')}")
    console.print(f"  Text body:   {'yes' if email.text_body is not None else 'no'}")
    console.print(f"  HTML body:   {'yes' if email.html_body is not None else 'no'}")
    if not email.parse_success:
        console.print(f"  [yellow]Partial parse:[/yellow] {escape(email.parse_error or '')}")

    if email.attachments:
        table = Table(title="Attachments")
        table.add_column("Filename", style="cyan")
        table.add_column("Type")
        table.add_column("Size", justify="right")
        table.add_column("Content-ID")
        for item in email.attachments:
            table.add_row(
                escape(item.filename or "-"),
                escape(item.content_type),
                str(item.size_bytes),
                escape(item.content_id or "-"),
            )
        console.print(table)
    console.print()


@main.command("build")
@click.argument("description", type=click.File("r"))
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None,
              help="Write the message here instead of stdout.")
def build_command(description, output: Optional[str]) -> None:
    """Build an RFC 2822 message from a JSON description ('-' reads stdin)."""
    try:
        message = OutboundMessage.model_validate(json.load(description))
        raw = build(message)
    except (json.JSONDecodeError, ValidationError, RelayError) as exc:
        print_error(str(exc))
        sys.exit(1)
    if output:
        Path(output).write_bytes(raw)
        print_success(f"Message written to {output} ({len(raw)} bytes).")
    else:
        click.get_binary_stream("stdout").write(raw)


@main.command("receive")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--recipient", "-r", default=None, help="Address the message was received for.")
@click.pass_context
def receive_command(ctx: click.Context, file: str, recipient: Optional[str]) -> None:
    """Store a raw message and deliver it to its routed endpoint."""
    raw = Path(file).read_bytes()
    result = with_core(ctx, lambda core: core.receive(raw, recipient=recipient))
    print_json(result.model_dump())
    if result.delivered is False:
        sys.exit(1)


# ============================================================================
# Endpoints and routes
# ============================================================================

@main.group("endpoints")
def endpoints() -> None:
    """Manage delivery endpoints."""


@endpoints.command("add")
@click.argument("endpoint_id")
@click.option("--url", help="Webhook URL (webhook endpoints).")
@click.option("--format", "webhook_format", type=click.Choice([item.value for item in WebhookFormat]),
              default=WebhookFormat.INBOUND.value, show_default=True, help="Webhook payload dialect.")
@click.option("--forward-to", help="Forward address (email endpoints).")
@click.option("--recipient", "recipients", multiple=True, help="Group recipient; repeat for each address.")
@click.option("--name", "-n", default="", help="Human-readable name.")
@click.option("--secret", default=None, help="HMAC signing secret.")
@click.option("--timeout", type=int, default=None, help="Request timeout in seconds.")
@click.option("--retries", type=int, default=None, help="Retries after the first attempt.")
@click.option("--header", "headers", multiple=True, help="Custom header as Name:Value; repeatable.")
@click.option("--inactive", is_flag=True, help="Create the endpoint as inactive.")
@click.pass_context
def endpoints_add(
    ctx: click.Context,
    endpoint_id: str,
    url: Optional[str],
    webhook_format: str,
    forward_to: Optional[str],
    recipients: tuple[str, ...],
    name: str,
    secret: Optional[str],
    timeout: Optional[int],
    retries: Optional[int],
    headers: tuple[str, ...],
    inactive: bool,
) -> None:
    """Add or replace an endpoint.

    The type follows the options given: --url for a webhook, --forward-to
    for a single forward, --recipient (repeated) for a group.
    """
    data: dict[str, Any] = {"id": endpoint_id, "name": name, "active": not inactive}
    if url:
        data.update(type="webhook", url=url, format=webhook_format)
        if secret:
            data["signing_secret"] = secret
        if timeout is not None:
            data["timeout_seconds"] = timeout
        if retries is not None:
            data["retry_attempts"] = retries
        custom = {}
        for item in headers:
            key, sep, value = item.partition(":")
            if not sep:
                print_error(f"Invalid header '{item}', expected Name:Value")
                sys.exit(1)
            custom[key.strip()] = value.strip()
        if custom:
            data["custom_headers"] = custom
    elif forward_to:
        data.update(type="email", forward_to=forward_to)
    elif recipients:
        data.update(type="email_group", recipients=list(recipients))
    else:
        print_error("One of --url, --forward-to or --recipient is required.")
        sys.exit(1)

    endpoint = with_core(ctx, lambda core: core.add_endpoint(data))
    print_success(f"Endpoint '{endpoint.id}' ({endpoint.type}) saved.")


@endpoints.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def endpoints_list(ctx: click.Context, as_json: bool) -> None:
    """List configured endpoints."""
    items = with_core(ctx, lambda core: core.list_endpoints())
    if as_json:
        print_json([item.model_dump(mode="json", exclude={"signing_secret"}) for item in items])
        return
    if not items:
        console.print("[dim]No endpoints configured.[/dim]")
        return

    table = Table(title="Endpoints")
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Target")
    table.add_column("Active", justify="center")
    for item in items:
        if item.type == "webhook":
            target = f"{item.url} ({item.format.value})"
        elif item.type == "email":
            target = item.forward_to
        else:
            target = ", ".join(item.recipients)
        table.add_row(item.id, item.type, escape(target), "[green]✓[/green]" if item.active else "[red]✗[/red]")
    console.print(table)


@endpoints.command("test")
@click.argument("endpoint_id")
@click.option("--format", "webhook_format", type=click.Choice([item.value for item in WebhookFormat]),
              default=None, help="Override the endpoint's payload dialect.")
@click.pass_context
def endpoints_test(ctx: click.Context, endpoint_id: str, webhook_format: Optional[str]) -> None:
    """Send a synthetic email to a webhook endpoint."""
    result = with_core(ctx, lambda core: core.test_endpoint(endpoint_id, webhook_format))
    if result.success:
        print_success(f"HTTP {result.status_code} in {result.elapsed_ms}ms")
    else:
        print_error(result.error or "delivery failed")
        sys.exit(1)


@main.group("routes")
def routes() -> None:
    """Manage recipient routes."""


@routes.command("add")
@click.argument("address")
@click.argument("endpoint_id")
@click.pass_context
def routes_add(ctx: click.Context, address: str, endpoint_id: str) -> None:
    """Route ADDRESS (or @domain) to ENDPOINT_ID."""
    route = with_core(ctx, lambda core: core.add_route(address, endpoint_id))
    print_success(f"{route['address']} -> {route['endpoint_id']}")


@routes.command("list")
@click.pass_context
def routes_list(ctx: click.Context) -> None:
    items = with_core(ctx, lambda core: core.list_routes())
    table = Table(title="Routes")
    table.add_column("Address", style="cyan")
    table.add_column("Endpoint")
    for item in items:
        table.add_row(escape(item["address"]), item["endpoint_id"])
    console.print(table)


# ============================================================================
# Scheduled sends
# ============================================================================

@main.group("schedule")
def schedule() -> None:
    """Manage scheduled sends."""


@schedule.command("add")
@click.option("--from", "from_addr", required=True, help="Sender address.")
@click.option("--to", "to", multiple=True, required=True, help="Recipient; repeatable.")
@click.option("--cc", multiple=True, help="Cc recipient; repeatable.")
@click.option("--bcc", multiple=True, help="Bcc recipient; repeatable.")
@click.option("--subject", "-s", default="", help="Subject line.")
@click.option("--text", default=None, help="Plain-text body.")
@click.option("--html", default=None, help="HTML body.")
@click.option("--at", "scheduled_at", required=True,
              help="ISO 8601 time or expressions like 'in 2 hours', 'tomorrow at 9am'.")
@click.option("--tz", "timezone_name", default="UTC", show_default=True, help="IANA timezone.")
@click.option("--key", "idempotency_key", default=None, help="Idempotency key.")
@click.pass_context
def schedule_add(
    ctx: click.Context,
    from_addr: str,
    to: tuple[str, ...],
    cc: tuple[str, ...],
    bcc: tuple[str, ...],
    subject: str,
    text: Optional[str],
    html: Optional[str],
    scheduled_at: str,
    timezone_name: str,
    idempotency_key: Optional[str],
) -> None:
    """Schedule a message for later delivery."""
    try:
        request = ScheduleRequest(
            from_addr=from_addr,
            to=list(to),
            cc=list(cc),
            bcc=list(bcc),
            subject=subject,
            text=text,
            html=html,
            scheduled_at=scheduled_at,
            timezone=timezone_name,
            idempotency_key=idempotency_key,
        )
    except ValidationError as exc:
        print_error(f"Validation error: {exc}")
        sys.exit(1)

    record = with_core(ctx, lambda core: core.scheduler.create(request))
    print_success(f"Scheduled {record.id} for {record.scheduled_at.isoformat()}.")


@schedule.command("list")
@click.option("--status", type=click.Choice(["scheduled", "processing", "sent", "cancelled", "failed"]),
              default=None, help="Only items in this status.")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def schedule_list(ctx: click.Context, status: Optional[str], limit: int, as_json: bool) -> None:
    """List scheduled sends."""
    records = with_core(ctx, lambda core: core.scheduler.list_by_status(status, limit=limit))
    if as_json:
        print_json([record.model_dump(mode="json", by_alias=True) for record in records])
        return
    if not records:
        console.print("[dim]No scheduled sends.[/dim]")
        return

    status_style = {"sent": "green", "failed": "red", "cancelled": "dim", "processing": "yellow"}
    table = Table(title="Scheduled sends")
    table.add_column("ID", style="cyan")
    table.add_column("Scheduled at")
    table.add_column("Status")
    table.add_column("To")
    table.add_column("Subject")
    for record in records:
        style = status_style.get(record.status.value, "")
        label = f"[{style}]{record.status.value}[/{style}]" if style else record.status.value
        table.add_row(
            record.id,
            record.scheduled_at.isoformat(),
            label,
            escape(", ".join(record.message.to)),
            escape(record.message.subject or ""),
        )
    console.print(table)


@schedule.command("cancel")
@click.argument("schedule_id")
@click.pass_context
def schedule_cancel(ctx: click.Context, schedule_id: str) -> None:
    """Cancel a send that has not been processed yet."""
    with_core(ctx, lambda core: core.scheduler.cancel(schedule_id))
    print_success(f"Scheduled send {schedule_id} cancelled.")


@main.command("process-due")
@click.pass_context
def process_due(ctx: click.Context) -> None:
    """Send every scheduled item that is due (for cron)."""
    result = with_core(ctx, lambda core: core.scheduler.process_due_sends())
    console.print(f"Processed {result.processed}: sent={result.sent}, failed={result.failed}")
    for error in result.errors:
        err_console.print(f"  [red]{error['id']}[/red]: {escape(error['error'])}")
    if result.failed:
        sys.exit(1)


# ============================================================================
# Server
# ============================================================================

@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API."""
    import uvicorn
    from fastapi import FastAPI

    from .api import create_app

    settings = _settings(ctx)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format='[%(asctime)s] [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        )
    core = InboundRelayCore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await core.start()
        yield
        await core.stop()

    app = create_app(core, api_token=settings.api_token, lifespan=lifespan)
    uvicorn.run(app, host=host or settings.http_host, port=port or settings.http_port)


if __name__ == "__main__":
    main()
