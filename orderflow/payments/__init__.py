"""Payment gateway implementations."""

from orderflow.payments.memory import InMemoryPaymentGateway
from orderflow.payments.zarinpal import ZarinPalGateway

__all__ = ["InMemoryPaymentGateway", "ZarinPalGateway"]
