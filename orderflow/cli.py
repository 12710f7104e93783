"""
orderflow CLI - operate the background workers and stock administration.

Commands:
    init-db          Create the schema for the configured store
    relay            Run the outbox relay (``--once`` for a single batch)
    sweep            Run the payment reconciliation sweeper (``--once`` for one sweep)
    reconcile-stock  Compare ledger-derived stock with the counters
    dead-letters     List parked outbox messages (``--requeue`` resets them)

Settings come from ``ORDERFLOW_*`` environment variables (and ``.env``);
``--storage-url`` overrides ``ORDERFLOW_STORAGE_URL``.
"""

import asyncio
import logging
from dataclasses import replace

import click
from rich.console import Console
from rich.table import Table

from orderflow.checkout.orchestrator import CheckoutOrchestrator
from orderflow.checkout.ports import PaymentGateway
from orderflow.core.config import OrderflowConfig, configure
from orderflow.core.env import EnvManager
from orderflow.inventory.service import InventoryService
from orderflow.monitoring.logging import setup_logging
from orderflow.outbox.relay import OutboxRelay
from orderflow.outbox.search import InMemorySearchIndex
from orderflow.outbox.types import OutboxConfig
from orderflow.payments.memory import InMemoryPaymentGateway
from orderflow.payments.zarinpal import ZarinPalGateway
from orderflow.reconciliation.sweeper import PaymentReconciliationSweeper
from orderflow.storage.base import OrderStore
from orderflow.storage.factory import create_store

console = Console()


def build_gateway(config: OrderflowConfig) -> PaymentGateway:
    """Payment gateway adapter selected by ``config.gateway``."""
    if config.gateway == "zarinpal":
        return ZarinPalGateway(
            config.zarinpal_merchant_id,
            sandbox=config.zarinpal_sandbox,
            timeout=config.gateway_timeout_seconds,
        )
    return InMemoryPaymentGateway()


async def _open_store(config: OrderflowConfig) -> OrderStore:
    store = create_store(config.storage_url)
    await store.initialize()
    return store


# ============================================================================
# CLI Group
# ============================================================================


class OrderedGroup(click.Group):
    """Click Group that lists commands in the order they were added."""

    def list_commands(self, ctx):
        return list(self.commands.keys())


@click.group(cls=OrderedGroup)
@click.version_option(prog_name="orderflow", package_name="orderflow")
@click.option("--storage-url", default=None, help="Storage URL (overrides ORDERFLOW_STORAGE_URL)")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, storage_url, json_logs, verbose):
    """
    orderflow - checkout saga workers and stock administration.

    \b
    Commands:
      init-db          Create the schema for the configured store
      relay            Apply outbox messages to the search index
      sweep            Re-verify stuck payments and expire abandoned orders
      reconcile-stock  Compare ledger-derived stock with the counters
      dead-letters     List or requeue parked outbox messages
    """
    env = EnvManager()
    config = OrderflowConfig.from_env(env)
    if storage_url:
        config = replace(config, storage_url=storage_url)
    configure(config)
    setup_logging(logging.DEBUG if verbose else logging.INFO, json_format=json_logs)

    unknown = OrderflowConfig.unknown_env_settings(env)
    if unknown:
        console.print(f"[yellow]Ignoring unknown settings: {', '.join(unknown)}[/yellow]")
    ctx.obj = config


# ============================================================================
# Schema
# ============================================================================


@cli.command("init-db")
@click.pass_obj
def init_db(config: OrderflowConfig):
    """Create the schema for the configured store."""

    async def _run():
        store = await _open_store(config)
        await store.close()

    asyncio.run(_run())
    console.print(f"[green]✓ Store ready:[/green] {config.storage_url}")


# ============================================================================
# Workers
# ============================================================================


@cli.command()
@click.option("--once", is_flag=True, help="Process a single batch and exit")
@click.pass_obj
def relay(config: OrderflowConfig, once: bool):
    """Run the outbox relay."""

    async def _run() -> int:
        store = await _open_store(config)
        try:
            outbox_relay = OutboxRelay(store.outbox, InMemorySearchIndex(), OutboxConfig.from_config(config))
            if once:
                await outbox_relay.recover_stuck()
                return await outbox_relay.process_batch()
            await outbox_relay.start()
            return outbox_relay.get_stats()["messages_sent"]
        finally:
            await store.close()

    processed = asyncio.run(_run())
    console.print(f"[green]✓ Relay processed {processed} message(s)[/green]")


@cli.command()
@click.option("--once", is_flag=True, help="Run a single sweep and exit")
@click.pass_obj
def sweep(config: OrderflowConfig, once: bool):
    """Run the payment reconciliation sweeper."""

    async def _run():
        store = await _open_store(config)
        try:
            orchestrator = CheckoutOrchestrator(store, build_gateway(config), config=config)
            sweeper = PaymentReconciliationSweeper(store, orchestrator)
            if once:
                return await sweeper.run_once()
            await sweeper.start()
            return None
        finally:
            await store.close()

    report = asyncio.run(_run())
    if report is None:
        return

    table = Table(title="Sweep Report")
    table.add_column("Outcome", style="cyan")
    table.add_column("Orders", justify="right")
    table.add_row("Verified", str(report.verified))
    table.add_row("Failed verification", str(report.failed_verification))
    table.add_row("Expired", str(report.expired))
    table.add_row("Errors", str(report.errors), style="red" if report.errors else None)
    console.print(table)


# ============================================================================
# Stock administration
# ============================================================================


@cli.command("reconcile-stock")
@click.option("--variant", "variant_ids", multiple=True, help="Variant id (repeatable, default all)")
@click.option("--actor", default=None, help="User recorded on correction rows")
@click.option("--dry-run", is_flag=True, help="Report drift without writing corrections")
@click.pass_obj
def reconcile_stock(config: OrderflowConfig, variant_ids: tuple[str, ...], actor: str | None, dry_run: bool):
    """Compare ledger-derived stock with the counters and emit corrections."""

    async def _run():
        store = await _open_store(config)
        try:
            service = InventoryService(store)
            return await service.reconcile_stock(list(variant_ids) or None, user_id=actor, dry_run=dry_run)
        finally:
            await store.close()

    results = asyncio.run(_run())

    table = Table(title="Stock Reconciliation" + (" (dry run)" if dry_run else ""))
    table.add_column("Variant", style="cyan")
    table.add_column("Ledger", justify="right")
    table.add_column("Counter", justify="right")
    table.add_column("Difference", justify="right")
    for result in results:
        style = "yellow" if result.has_discrepancy else None
        table.add_row(
            result.variant_id,
            str(result.calculated_stock),
            str(result.current_stock),
            str(result.difference),
            style=style,
        )
    console.print(table)

    drifted = sum(1 for result in results if result.has_discrepancy)
    if drifted == 0:
        console.print("[green]✓ Ledger and counters agree[/green]")
    elif dry_run:
        console.print(f"[yellow]{drifted} variant(s) drifted, no corrections written[/yellow]")
    else:
        console.print(f"[yellow]{drifted} correction(s) written[/yellow]")


@cli.command("dead-letters")
@click.option("--requeue", is_flag=True, help="Reset parked messages to pending")
@click.option("--limit", default=100, show_default=True, help="Maximum messages to show or requeue")
@click.pass_obj
def dead_letters(config: OrderflowConfig, requeue: bool, limit: int):
    """List parked outbox messages."""

    async def _run():
        store = await _open_store(config)
        try:
            messages = await store.outbox.get_dead_letters(limit)
            requeued = 0
            if requeue and messages:
                outbox_relay = OutboxRelay(store.outbox, InMemorySearchIndex(), OutboxConfig.from_config(config))
                requeued = await outbox_relay.requeue_dead_letters(limit)
            return messages, requeued
        finally:
            await store.close()

    messages, requeued = asyncio.run(_run())

    if not messages:
        console.print("[green]No dead-lettered messages[/green]")
        return

    table = Table(title="Dead-lettered Outbox Messages")
    table.add_column("ID", style="dim")
    table.add_column("Entity", style="cyan")
    table.add_column("Change")
    table.add_column("Retries", justify="right")
    table.add_column("Last error", style="red")
    for message in messages:
        table.add_row(
            message.id,
            f"{message.entity_type}/{message.entity_id}",
            message.change_type.value,
            str(message.retry_count),
            message.last_error or "",
        )
    console.print(table)

    if requeue:
        console.print(f"[green]✓ Requeued {requeued} message(s)[/green]")


def main():
    cli()


if __name__ == "__main__":
    main()
