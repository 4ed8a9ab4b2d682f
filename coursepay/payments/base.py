# coursepay/payments/base.py
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from ..error_handlers import GatewayTimeout, GatewayUnavailable, AppException


class PaymentGateway(str, Enum):
    VNPAY = "VNPAY"
    MOMO = "MOMO"


class NotificationSource(str, Enum):
    CALLBACK = "CALLBACK"  # browser redirect back from the gateway
    WEBHOOK = "WEBHOOK"    # server-to-server (VNPay IPN, MoMo ipnUrl)


class ReconciliationOutcome(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    COUPON_EXHAUSTED = "COUPON_EXHAUSTED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"  # order had already left PENDING


@dataclass
class PaymentUrlResponse:
    """Standardized response for payment URL creation"""
    order_code: str
    payment_url: str
    provider_request_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifiedNotification:
    """An authentic gateway notification, flattened to the fields we act on"""
    order_code: str
    gateway_transaction_id: str
    amount: int  # VND
    result_code: str
    success: bool
    raw_payload_hash: str
    message: Optional[str] = None
    # False when the gateway reported a fraction of a dong
    amount_exact: bool = True


@dataclass
class RefundInstruction:
    gateway_transaction_id: str
    amount: int  # VND
    order_code: str
    full: bool
    paid_at: Optional[datetime]
    reason: str
    requested_by: str
    # Same value on every attempt so the gateway can spot a resend
    request_key: str


@dataclass
class RefundResult:
    """Standardized refund response"""
    refund_id: Optional[str]
    status: str
    metadata: Dict[str, Any]


@dataclass
class WebhookAck:
    """Body and status a gateway expects in reply to a webhook"""
    status_code: int
    body: Optional[Dict[str, Any]] = None


class BasePaymentProvider(ABC):
    """Abstract base class for payment gateway adapters"""

    gateway: PaymentGateway

    def __init__(self, config: Dict[str, Any], http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.timeout = float(config.get("timeout", 15.0))
        # Injected client lets callers share a pool (or a mock transport)
        self._http_client = http_client
        self._initialize_client()

    @abstractmethod
    def _initialize_client(self):
        """Load and validate provider-specific credentials"""
        pass

    @abstractmethod
    async def build_payment_url(self, order, client_ip: str) -> PaymentUrlResponse:
        """
        Build the signed URL the buyer is redirected to

        Args:
            order: Order with order_code and final_price (VND)
            client_ip: Buyer IP, forwarded to gateways that require it

        Raises:
            GatewayUnavailable: Gateway could not issue a URL
        """
        pass

    @abstractmethod
    def verify_notification(self, raw_params: Dict[str, str]) -> VerifiedNotification:
        """
        Recompute and check the signature of a callback or webhook

        Pure: no I/O, no state. Merchant identity mismatch counts as an
        invalid signature.

        Raises:
            InvalidSignature: Signature missing, wrong, or for another merchant
        """
        pass

    @abstractmethod
    async def issue_refund(self, instruction: RefundInstruction) -> RefundResult:
        """
        Ask the gateway to refund a captured payment

        Raises:
            GatewayUnavailable: Connection error or 5xx (retryable)
            GatewayTimeout: Sent but unanswered, the refund may have happened
            RefundRejected: Gateway declined the refund (terminal)
        """
        pass

    @abstractmethod
    def acknowledge(self, outcome: ReconciliationOutcome) -> WebhookAck:
        """Webhook reply once a notification has been reconciled"""
        pass

    def acknowledge_error(self, error: AppException) -> Optional[WebhookAck]:
        """
        Webhook reply for a rejected notification.

        None lets the error propagate to the regular exception handlers.
        """
        return None

    @staticmethod
    def fallback_transaction_id(order_code: str, result_code: str, stamp: str) -> str:
        # Gateways send "0" or nothing as transaction number for abandoned payments
        return f"{order_code}:{result_code}:{stamp}"

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a JSON body with the configured timeout, mapping transport failures"""
        gateway = self.gateway.value
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload)
        except (httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # Nothing was sent
            raise GatewayUnavailable(gateway, f"Could not connect in time: {e}") from e
        except httpx.TimeoutException as e:
            raise GatewayTimeout(gateway, f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GatewayUnavailable(gateway, f"Request failed: {e}") from e

        if response.status_code >= 500:
            raise GatewayUnavailable(gateway, f"Gateway returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise GatewayUnavailable(gateway, "Gateway returned a non-JSON body") from e
