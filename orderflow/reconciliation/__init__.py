"""Background reconciliation of stuck and abandoned payments."""

from orderflow.reconciliation.sweeper import PaymentReconciliationSweeper, SweepReport

__all__ = ["PaymentReconciliationSweeper", "SweepReport"]
