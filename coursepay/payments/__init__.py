# coursepay/payments/__init__.py
from .base import (
    PaymentGateway,
    NotificationSource,
    ReconciliationOutcome,
    BasePaymentProvider,
)
from .factory import PaymentProviderFactory, ProviderRegistry

__all__ = [
    "PaymentGateway",
    "NotificationSource",
    "ReconciliationOutcome",
    "BasePaymentProvider",
    "PaymentProviderFactory",
    "ProviderRegistry",
]
