# coursepay/payments/factory.py
from typing import Dict, Any, Optional

import httpx
from fastapi import Request

from .base import BasePaymentProvider, PaymentGateway
from .providers.vnpay_provider import VNPayProvider
from .providers.momo_provider import MoMoProvider
from ..config import settings


class PaymentProviderFactory:
    """Factory for creating payment gateway adapters"""

    _providers = {
        PaymentGateway.VNPAY: VNPayProvider,
        PaymentGateway.MOMO: MoMoProvider,
    }

    @classmethod
    def create_provider(
        cls,
        gateway: PaymentGateway,
        config: Dict[str, Any],
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> BasePaymentProvider:
        """
        Create a payment gateway adapter

        Args:
            gateway: Gateway type (VNPAY/MOMO)
            config: Gateway-specific configuration
            http_client: Optional shared client for outbound calls

        Returns:
            BasePaymentProvider instance

        Raises:
            ValueError: If gateway not supported
        """
        provider_class = cls._providers.get(PaymentGateway(gateway))

        if not provider_class:
            raise ValueError(f"Unsupported payment gateway: {gateway}")

        return provider_class(config, http_client=http_client)


def default_provider_configs() -> Dict[str, Dict[str, Any]]:
    return {
        PaymentGateway.VNPAY.value: settings.vnpay_config(),
        PaymentGateway.MOMO.value: settings.momo_config(),
    }


class ProviderRegistry:
    """Resolves the adapter for a gateway from a fixed set of configs"""

    def __init__(
        self,
        provider_configs: Optional[Dict[str, Dict[str, Any]]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider_configs = provider_configs or default_provider_configs()
        self.http_client = http_client
        self._cache: Dict[PaymentGateway, BasePaymentProvider] = {}

    def get(self, gateway) -> BasePaymentProvider:
        gateway = PaymentGateway(gateway)
        if gateway not in self._cache:
            self._cache[gateway] = PaymentProviderFactory.create_provider(
                gateway,
                self.provider_configs[gateway.value],
                http_client=self.http_client,
            )
        return self._cache[gateway]


def get_provider_registry(request: Request) -> ProviderRegistry:
    """FastAPI dependency; the registry is built once in the app lifespan"""
    return request.app.state.providers
