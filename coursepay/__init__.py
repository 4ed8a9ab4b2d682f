"""Course purchase, payment reconciliation and refund service."""

__version__ = "1.0.0"
