"""
Tests for the orderflow CLI against a SQLite file store.
"""

import asyncio
import logging

import pytest
from click.testing import CliRunner
from rich.console import Console

from orderflow.cli import build_gateway, cli
from orderflow.core.config import OrderflowConfig, configure
from orderflow.inventory.service import InventoryService
from orderflow.inventory.types import VariantStock
from orderflow.outbox.types import OutboxMessage, OutboxStatus
from orderflow.payments.memory import InMemoryPaymentGateway
from orderflow.payments.zarinpal import ZarinPalGateway
from orderflow.storage.errors import ConnectionError
from orderflow.storage.sqlite import SQLiteOrderStore


@pytest.fixture(autouse=True)
def _isolate(tmp_path, monkeypatch):
    """Run in an empty directory and undo global logging/config changes."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ORDERFLOW_STORAGE_URL", raising=False)
    monkeypatch.setattr("orderflow.cli.console", Console(width=200))
    yield
    configure(OrderflowConfig())
    logger = logging.getLogger("orderflow")
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "orders.db")


def invoke(runner, db_path, *args):
    return runner.invoke(cli, ["--storage-url", f"sqlite:///{db_path}", *args])


def seed(db_path, operation):
    """Run ``operation(store)`` against the database file."""

    async def _run():
        async with SQLiteOrderStore(db_path) as store:
            return await operation(store)

    return asyncio.run(_run())


async def add_variant(store, variant_id="v-1", on_hand=10):
    await InventoryService(store).register_variant(
        VariantStock(id=variant_id, product_id="p-1", product_name="Mug", on_hand=on_hand)
    )


async def drift_counter(store, variant_id="v-1", on_hand=7):
    async with store.unit_of_work() as uow:
        variant = await uow.variants.get(variant_id)
        variant.on_hand = on_hand
        await uow.variants.update(variant)
        await uow.commit()


class TestGroup:
    def test_help_lists_commands_in_order(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        commands = ["init-db", "relay", "sweep", "reconcile-stock", "dead-letters"]
        positions = [result.output.index(f"  {name}") for name in commands]
        assert positions == sorted(positions)

    def test_unknown_storage_scheme(self, runner):
        result = runner.invoke(cli, ["--storage-url", "mongodb://localhost", "init-db"])
        assert result.exit_code != 0
        assert isinstance(result.exception, ConnectionError)

    def test_build_gateway(self):
        assert isinstance(build_gateway(OrderflowConfig()), InMemoryPaymentGateway)
        gateway = build_gateway(OrderflowConfig(gateway="zarinpal", zarinpal_merchant_id="m-1"))
        assert isinstance(gateway, ZarinPalGateway)
        asyncio.run(gateway.close())


class TestInitDb:
    def test_creates_database(self, runner, db_path, tmp_path):
        result = invoke(runner, db_path, "init-db")

        assert result.exit_code == 0, result.output
        assert "Store ready" in result.output
        assert (tmp_path / "orders.db").exists()

    def test_warns_about_unknown_settings(self, runner, db_path, monkeypatch):
        monkeypatch.setenv("ORDERFLOW_SWEEP_BACH_SIZE", "5")

        result = invoke(runner, db_path, "init-db")

        assert result.exit_code == 0, result.output
        assert "ORDERFLOW_SWEEP_BACH_SIZE" in result.output


class TestRelayCommand:
    def test_relay_once(self, runner, db_path):
        """Registering a variant queues one product document."""
        seed(db_path, add_variant)

        result = invoke(runner, db_path, "relay", "--once")

        assert result.exit_code == 0, result.output
        assert "Relay processed 1 message(s)" in result.output
        messages = seed(db_path, lambda store: store.outbox.list_all())
        assert [m.status for m in messages] == [OutboxStatus.SENT]

        again = invoke(runner, db_path, "relay", "--once")
        assert "Relay processed 0 message(s)" in again.output


class TestSweepCommand:
    def test_sweep_once(self, runner, db_path):
        result = invoke(runner, db_path, "sweep", "--once")

        assert result.exit_code == 0, result.output
        assert "Sweep Report" in result.output
        assert "Expired" in result.output


class TestReconcileStockCommand:
    def test_counters_agree(self, runner, db_path):
        seed(db_path, add_variant)

        result = invoke(runner, db_path, "reconcile-stock")

        assert result.exit_code == 0, result.output
        assert "Ledger and counters agree" in result.output

    def test_dry_run_writes_nothing(self, runner, db_path):
        seed(db_path, add_variant)
        seed(db_path, drift_counter)

        result = invoke(runner, db_path, "reconcile-stock", "--dry-run")

        assert "1 variant(s) drifted, no corrections written" in result.output
        ledger = seed(db_path, lambda store: _ledger(store, "v-1"))
        assert len(ledger) == 1

    def test_correction_written(self, runner, db_path):
        """A drifted counter gets an attributed adjustment row."""
        seed(db_path, add_variant)
        seed(db_path, drift_counter)

        result = invoke(runner, db_path, "reconcile-stock", "--variant", "v-1", "--actor", "ops-1")

        assert result.exit_code == 0, result.output
        assert "1 correction(s) written" in result.output
        ledger = seed(db_path, lambda store: _ledger(store, "v-1"))
        assert ledger[-1].quantity_change == -3
        assert ledger[-1].user_id == "ops-1"


class TestDeadLettersCommand:
    def test_none_parked(self, runner, db_path):
        result = invoke(runner, db_path, "dead-letters")
        assert result.exit_code == 0, result.output
        assert "No dead-lettered messages" in result.output

    def test_list_and_requeue(self, runner, db_path):
        async def park(store):
            message = OutboxMessage.index("product", "v-9", {})
            message.status = OutboxStatus.DEAD_LETTER
            message.retry_count = 5
            message.last_error = "index down"
            async with store.unit_of_work() as uow:
                await uow.outbox.insert(message)
                await uow.commit()

        seed(db_path, park)

        listed = invoke(runner, db_path, "dead-letters")
        assert "Dead-lettered Outbox Messages" in listed.output
        assert "product/v-9" in listed.output

        requeued = invoke(runner, db_path, "dead-letters", "--requeue")
        assert requeued.exit_code == 0, requeued.output
        assert "Requeued 1 message(s)" in requeued.output
        assert seed(db_path, lambda store: store.outbox.get_pending_count()) == 1


async def _ledger(store, variant_id):
    async with store.unit_of_work() as uow:
        return await uow.ledger.list_for_variant(variant_id)
