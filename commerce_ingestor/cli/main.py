"""Operator CLI for connection syncs and webhook signature checks."""
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import uvicorn

from commerce_ingestor.exceptions import CommerceIngestorError
from commerce_ingestor.models.base import session_scope
from commerce_ingestor.models.repository import ConnectionCreate, ConnectionRepository
from commerce_ingestor.sync.orchestrator import SyncOrchestrator
from commerce_ingestor.sync.registry import ConnectionRegistry
from commerce_ingestor.utils.config import get_settings
from commerce_ingestor.webhooks.verification import (
    sign_shopify,
    sign_stripe,
    verify_shopify,
    verify_stripe,
)


def _run(operation: str, connection_id: str, **options: Any) -> Any:
    async def _main() -> Any:
        settings = get_settings()
        registry = ConnectionRegistry(settings)
        orchestrator = SyncOrchestrator(registry, settings=settings)
        try:
            method = getattr(orchestrator, operation)
            return await method(connection_id, **options)
        finally:
            await registry.aclose()

    return asyncio.run(_main())


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
def cli() -> None:
    """Commerce ingestor operations."""


@cli.command("add-connection")
@click.option("--org", "organization_id", required=True, help="Owning organization id")
@click.option(
    "--provider",
    required=True,
    type=click.Choice(["shopify", "stripe", "google_analytics"]),
)
@click.option("--account", "account_id", required=True, help="Provider account identifier")
@click.option("--credential", required=True, envvar="COMMERCE_CONNECTION_CREDENTIAL")
@click.option(
    "--refresh-token",
    default=None,
    envvar="COMMERCE_CONNECTION_REFRESH_TOKEN",
    help="OAuth refresh token (Google Analytics)",
)
def add_connection(
    organization_id: str,
    provider: str,
    account_id: str,
    credential: str,
    refresh_token: str | None,
) -> None:
    """Create or refresh the active connection for an organization."""
    try:
        with session_scope() as session:
            connection = ConnectionRepository(session).upsert_active(
                ConnectionCreate(
                    organization_id=organization_id,
                    provider=provider,
                    provider_account_id=account_id,
                    credential=credential,
                    settings={"refresh_token": refresh_token} if refresh_token else {},
                )
            )
            connection_id = connection.id
    except CommerceIngestorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(connection_id)


@cli.command("test")
@click.argument("connection_id")
def test_connection(connection_id: str) -> None:
    """Issue one authenticated call against the provider."""
    try:
        result = _run("test_connection", connection_id)
    except CommerceIngestorError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result.model_dump(mode="json"))
    if not result.ok:
        sys.exit(1)


@cli.command("sync")
@click.argument("connection_id")
@click.option("--lookback-days", type=int, default=None, help="Ignore cursors and refetch N days")
def sync(connection_id: str, lookback_days: int | None) -> None:
    """Run a backfill in the foreground and print the result."""
    options: dict[str, Any] = {}
    if lookback_days is not None:
        options["lookback_days"] = lookback_days
    try:
        result = _run("sync_connection", connection_id, **options)
    except CommerceIngestorError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result.model_dump(mode="json"))
    if result.status == "error":
        sys.exit(1)


@cli.command("disconnect")
@click.argument("connection_id")
@click.option("--reason", default="manual", show_default=True)
def disconnect(connection_id: str, reason: str) -> None:
    """Disconnect a connection and discard its credential."""
    try:
        snapshot = _run("disconnect", connection_id, reason=reason)
    except CommerceIngestorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{snapshot.id} {snapshot.status}")


@cli.command("verify-signature")
@click.option("--provider", required=True, type=click.Choice(["shopify", "stripe"]))
@click.option("--body", "body_path", required=True, type=click.Path(exists=True, path_type=Path))
@click.option("--signature", default=None, help="Header value to verify")
@click.option("--secret", required=True, envvar="COMMERCE_WEBHOOK_SECRET")
@click.option("--sign", "sign_only", is_flag=True, help="Print a valid header instead")
def verify_signature(
    provider: str, body_path: Path, signature: str | None, secret: str, sign_only: bool
) -> None:
    """Check (or produce) a webhook signature for a saved body."""
    body = body_path.read_bytes()
    if sign_only:
        click.echo(sign_shopify(body, secret) if provider == "shopify" else sign_stripe(body, secret))
        return

    if provider == "shopify":
        result = verify_shopify(body, signature, secret)
    else:
        result = verify_stripe(
            body, signature, secret, replay_window_seconds=get_settings().replay_window_seconds
        )
    if result.valid:
        click.echo("valid")
        return
    click.echo(f"invalid: {result.reason}")
    sys.exit(1)


if __name__ == "__main__":
    cli()


@cli.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--workers", default=1, type=int, show_default=True)
def serve(host: str, port: int, workers: int) -> None:
    """Run the webhook and connection API."""
    settings = get_settings()
    uvicorn.run(
        "commerce_ingestor.api.main:app",
        host=host,
        port=port,
        workers=workers,
        log_level=settings.log_level.lower(),
        reload=False,
    )
