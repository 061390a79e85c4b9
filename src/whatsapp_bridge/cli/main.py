"""
Bridge CLI

Command-line interface for bridge administration.

Commands:
- register-instance: Attach a gateway instance to an installed tenant
- instance-state: Poll an instance's connection state and persist it
- set-webhook: Point an instance's webhooks at the bridge
- show-correlation: Look up the CRM message behind a gateway message id
- prune-correlations: Delete old correlation entries
"""

import asyncio
from datetime import timedelta
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from basecore.logging import setup_logging
from basecore.settings import get_settings
from whatsapp_bridge.exceptions import BridgeError
from whatsapp_bridge.persistence.models import parse_connection_state, utcnow
from whatsapp_bridge.persistence.repo import BridgeRepository, CorrelationStore
from whatsapp_bridge.providers.evolution.client import EvolutionClient

app = typer.Typer(
    name="bridge-cli",
    help="WhatsApp CRM Bridge CLI",
)

console = Console()


@app.callback()
def main():
    """Configure logging for every command."""
    setup_logging()


def get_db():
    """Get database session."""
    from basecore.db import get_db as _get_db
    return next(_get_db())


def _repo(db) -> BridgeRepository:
    return BridgeRepository(db, get_settings().BRIDGE_ENCRYPTION_KEY)


def _gateway_client(repo: BridgeRepository, instance) -> EvolutionClient:
    return EvolutionClient(
        api_url=instance.api_url,
        api_key=repo.get_instance_api_key(instance) or "",
        instance_name=instance.id,
        timeout=get_settings().GATEWAY_TIMEOUT_SECONDS,
    )


@app.command()
def register_instance(
    instance_id: str = typer.Argument(..., help="Evolution instance name"),
    tenant_id: str = typer.Option(..., "--tenant", help="CRM location id of an installed tenant"),
    api_url: str = typer.Option(..., help="Evolution API base URL"),
    api_key: str = typer.Option(..., help="Evolution API key (encrypted when a key is configured)"),
    name: Optional[str] = typer.Option(None, help="Display name"),
):
    """
    Attach a gateway instance to a tenant.

    The instance starts in the connecting state until the gateway reports otherwise.
    """
    db = get_db()

    try:
        repo = _repo(db)

        if repo.get_tenant(tenant_id) is None:
            rprint(f"[red]Tenant not installed: {tenant_id}[/red]")
            raise typer.Exit(1)

        if repo.get_instance(instance_id) is not None:
            rprint(f"[yellow]Instance already registered: {instance_id}[/yellow]")
            raise typer.Exit(1)

        if not get_settings().BRIDGE_ENCRYPTION_KEY:
            rprint("[yellow]Warning: BRIDGE_ENCRYPTION_KEY not set, storing API key unencrypted[/yellow]")

        instance = repo.create_instance(
            instance_id=instance_id,
            tenant_id=tenant_id,
            api_url=api_url,
            api_key=api_key,
            name=name,
        )
        rprint(f"[green]Registered instance {instance.id} for tenant {tenant_id}[/green]")

    finally:
        db.close()


@app.command()
def instance_state(
    instance_id: str = typer.Argument(..., help="Evolution instance name"),
):
    """
    Poll an instance's connection state from the gateway and persist it.
    """
    db = get_db()

    try:
        repo = _repo(db)
        instance = repo.get_instance(instance_id)
        if instance is None:
            rprint(f"[red]Unknown instance: {instance_id}[/red]")
            raise typer.Exit(1)

        client = _gateway_client(repo, instance)

        async def poll():
            async with client:
                return await client.get_connection_state()

        try:
            raw_state = asyncio.run(poll())
        except BridgeError as e:
            rprint(f"[red]Gateway error: {e}[/red]")
            raise typer.Exit(1)

        state = parse_connection_state(raw_state)
        if state is None:
            rprint(f"[yellow]Unrecognized state from gateway: {raw_state}[/yellow]")
            raise typer.Exit(1)

        repo.update_instance_state(instance, state)

        rprint(f"\n[cyan]Instance: {instance.id}[/cyan]")
        rprint(f"  State: {state.value}")
        rprint(f"  Authorization: {instance.authorization_status.value}")

    finally:
        db.close()


@app.command()
def set_webhook(
    instance_id: str = typer.Argument(..., help="Evolution instance name"),
    url: Optional[str] = typer.Option(None, help="Webhook URL (default: PUBLIC_WEBHOOK_URL/webhooks/evolution)"),
):
    """
    Register the bridge's webhook URL and events on an instance.
    """
    settings = get_settings()
    webhook_url = url
    if not webhook_url:
        if not settings.PUBLIC_WEBHOOK_URL:
            rprint("[red]Pass --url or set PUBLIC_WEBHOOK_URL[/red]")
            raise typer.Exit(1)
        webhook_url = f"{settings.PUBLIC_WEBHOOK_URL.rstrip('/')}/webhooks/evolution"

    headers = None
    if settings.EVOLUTION_WEBHOOK_API_KEY:
        headers = {"apikey": settings.EVOLUTION_WEBHOOK_API_KEY}

    db = get_db()

    try:
        repo = _repo(db)
        instance = repo.get_instance(instance_id)
        if instance is None:
            rprint(f"[red]Unknown instance: {instance_id}[/red]")
            raise typer.Exit(1)

        client = _gateway_client(repo, instance)

        async def register():
            async with client:
                return await client.set_webhook(webhook_url, headers=headers)

        try:
            asyncio.run(register())
        except BridgeError as e:
            rprint(f"[red]Gateway error: {e}[/red]")
            raise typer.Exit(1)

        rprint(f"[green]Webhook set for {instance_id}: {webhook_url}[/green]")

    finally:
        db.close()


@app.command()
def show_correlation(
    gateway_message_id: str = typer.Argument(..., help="Gateway message id"),
):
    """
    Show the correlation entry for a gateway message id.
    """
    db = get_db()

    try:
        entry = CorrelationStore(db).find_by_gateway_id(gateway_message_id)
        if entry is None:
            rprint(f"[yellow]No correlation for {gateway_message_id}[/yellow]")
            raise typer.Exit(1)

        table = Table(title="Correlation")
        table.add_column("Gateway ID")
        table.add_column("CRM Message ID")
        table.add_column("Instance")
        table.add_column("Contact", style="dim")
        table.add_column("Created")
        table.add_row(
            entry.gateway_message_id,
            entry.crm_message_id,
            entry.instance_id,
            entry.contact_phone or "-",
            entry.created_at.strftime("%Y-%m-%d %H:%M"),
        )
        console.print(table)

    finally:
        db.close()


@app.command()
def prune_correlations(
    older_than_days: int = typer.Option(90, min=1, help="Delete entries older than this many days"),
):
    """
    Delete correlation entries older than the retention window.
    """
    db = get_db()

    try:
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = CorrelationStore(db).prune_older_than(cutoff)
        rprint(f"[green]Deleted {deleted} correlation entries older than {older_than_days} days[/green]")

    finally:
        db.close()


if __name__ == "__main__":
    app()
