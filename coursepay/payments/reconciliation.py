# coursepay/payments/reconciliation.py
"""
Single entry point for gateway notifications.

The browser callback and the server webhook both land here with a flat
dict of parameters. Either may arrive first, twice, or not at all; the
result is the same. Guarantees come from the database:

- the order row is locked (SELECT ... FOR UPDATE) for the whole decision
- (gateway, gateway_transaction_id) is unique, so a replay inserts nothing
- the coupon cap is a conditional UPDATE inside the same transaction
- enrollment is unique per (user, course)
"""

from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .base import (
    NotificationSource,
    PaymentGateway,
    ReconciliationOutcome,
    VerifiedNotification,
)
from .factory import ProviderRegistry
from .models import PaymentTransaction
from ..coupons.service import CouponService
from ..database import insert_ignore, utcnow
from ..enrollments.service import EnrollmentService
from ..error_handlers import CouponExhausted, InvalidSignature, OrderNotFound
from ..logging_config import get_logger, log_business_event, log_security_event
from ..orders.models import Order, PaymentStatus, FailureReason
from ..orders.service import OrderService

logger = get_logger(__name__)

OUTCOME_MESSAGES = {
    ReconciliationOutcome.PAID: "Payment successful",
    ReconciliationOutcome.FAILED: "Payment failed",
    ReconciliationOutcome.AMOUNT_MISMATCH: "Payment amount does not match the order",
    ReconciliationOutcome.COUPON_EXHAUSTED: "Coupon is no longer available",
    ReconciliationOutcome.ALREADY_PROCESSED: "Order has already been processed",
}


@dataclass
class ReconciliationResult:
    order_id: int
    order_code: str
    status: PaymentStatus
    outcome: ReconciliationOutcome
    duplicate: bool
    message: str


def _order_code_hint(raw_params: Dict[str, str]) -> Optional[str]:
    return raw_params.get("vnp_TxnRef") or raw_params.get("orderId")


class ReconciliationEngine:
    """Applies verified gateway notifications to orders, exactly once"""

    def __init__(self, db: AsyncSession, providers: Optional[ProviderRegistry] = None):
        self.db = db
        self.providers = providers or ProviderRegistry()
        self.orders = OrderService(db, self.providers)

    async def reconcile(
        self,
        raw_params: Dict[str, str],
        gateway: PaymentGateway,
        source: NotificationSource,
    ) -> ReconciliationResult:
        """
        Verify a notification and drive the order to its outcome.

        Raises:
            InvalidSignature: Nothing is written
            OrderNotFound: Notification names an unknown order
        """
        gateway = PaymentGateway(gateway)
        source = NotificationSource(source)
        provider = self.providers.get(gateway)

        try:
            notification = provider.verify_notification(raw_params)
        except InvalidSignature as e:
            log_security_event(
                "invalid_gateway_signature",
                gateway=gateway.value,
                source=source.value,
                reason=e.details.get("reason"),
                order_code=_order_code_hint(raw_params),
            )
            raise

        logger.info(
            "Gateway notification verified",
            extra={"extra_data": {
                "gateway": gateway.value,
                "source": source.value,
                "order_code": notification.order_code,
                "gateway_transaction_id": notification.gateway_transaction_id,
                "result_code": notification.result_code,
            }}
        )

        try:
            order = await self.orders.get_by_code(notification.order_code, for_update=True)
        except OrderNotFound:
            logger.warning(
                "Notification for unknown order",
                extra={"extra_data": {"gateway": gateway.value, "order_code": notification.order_code}}
            )
            await self.db.rollback()
            raise

        outcome = self._classify(order, notification)

        recorded = await self._record(order, notification, gateway, source, outcome)
        if not recorded:
            return await self._duplicate_result(order, notification, gateway)

        if outcome == ReconciliationOutcome.ALREADY_PROCESSED:
            return await self._already_processed(order, notification, gateway)

        if outcome == ReconciliationOutcome.AMOUNT_MISMATCH:
            return await self._amount_mismatch(order, notification)

        if outcome == ReconciliationOutcome.FAILED:
            order.payment_status = PaymentStatus.FAILED
            order.failure_reason = FailureReason.GATEWAY_DECLINED
            await self.db.commit()
            log_business_event(
                "payment_failed",
                user_id=order.user_id,
                order_code=order.order_code,
                gateway=gateway.value,
                result_code=notification.result_code,
            )
            return self._result(order, outcome, message=notification.message)

        return await self._mark_paid(order, notification, gateway, source)

    @staticmethod
    def _classify(order: Order, notification: VerifiedNotification) -> ReconciliationOutcome:
        if order.payment_status != PaymentStatus.PENDING:
            return ReconciliationOutcome.ALREADY_PROCESSED
        if not notification.amount_exact or notification.amount != int(order.final_price):
            return ReconciliationOutcome.AMOUNT_MISMATCH
        if notification.success:
            return ReconciliationOutcome.PAID
        return ReconciliationOutcome.FAILED

    async def _record(
        self,
        order: Order,
        notification: VerifiedNotification,
        gateway: PaymentGateway,
        source: NotificationSource,
        outcome: ReconciliationOutcome,
    ) -> bool:
        return await insert_ignore(
            self.db,
            PaymentTransaction,
            {
                "order_id": order.id,
                "gateway": gateway,
                "gateway_transaction_id": notification.gateway_transaction_id,
                "amount": notification.amount,
                "result_code": notification.result_code,
                "raw_payload_hash": notification.raw_payload_hash,
                "source": source,
                "outcome": outcome,
            },
            index_elements=["gateway", "gateway_transaction_id"],
        )

    async def _duplicate_result(
        self,
        order: Order,
        notification: VerifiedNotification,
        gateway: PaymentGateway,
    ) -> ReconciliationResult:
        result = await self.db.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.gateway == gateway,
                PaymentTransaction.gateway_transaction_id == notification.gateway_transaction_id,
            )
        )
        existing = result.scalar_one()

        if existing.order_id != order.id:
            # The gateway transaction already paid for a different order
            order.needs_manual_review = True
            await self.db.commit()
            logger.critical(
                "Gateway transaction id already recorded against another order",
                extra={"user_id": order.user_id, "extra_data": {
                    "order_code": order.order_code,
                    "recorded_order_id": existing.order_id,
                    "gateway": gateway.value,
                    "gateway_transaction_id": notification.gateway_transaction_id,
                }}
            )
            log_security_event(
                "gateway_transaction_reused",
                gateway=gateway.value,
                order_code=order.order_code,
                gateway_transaction_id=notification.gateway_transaction_id,
            )
            return self._result(order, ReconciliationOutcome.ALREADY_PROCESSED, duplicate=True)

        await self.db.commit()

        logger.info(
            "Duplicate notification ignored (idempotent)",
            extra={"user_id": order.user_id, "extra_data": {
                "order_code": order.order_code,
                "gateway_transaction_id": notification.gateway_transaction_id,
                "recorded_outcome": existing.outcome.value,
            }}
        )
        return self._result(order, existing.outcome, duplicate=True)

    async def _already_processed(
        self,
        order: Order,
        notification: VerifiedNotification,
        gateway: PaymentGateway,
    ) -> ReconciliationResult:
        if notification.success:
            # A distinct successful payment for an order that is no longer
            # payable: money moved and nothing will grant access for it
            order.needs_manual_review = True
            logger.critical(
                "Successful payment for an order that is no longer pending",
                extra={"user_id": order.user_id, "extra_data": {
                    "order_code": order.order_code,
                    "status": order.payment_status.value,
                    "gateway": gateway.value,
                    "gateway_transaction_id": notification.gateway_transaction_id,
                    "amount": notification.amount,
                }}
            )
        await self.db.commit()
        return self._result(order, ReconciliationOutcome.ALREADY_PROCESSED)

    async def _amount_mismatch(
        self,
        order: Order,
        notification: VerifiedNotification,
    ) -> ReconciliationResult:
        order.payment_status = PaymentStatus.FAILED
        order.failure_reason = FailureReason.AMOUNT_MISMATCH
        if notification.success:
            order.needs_manual_review = True
        await self.db.commit()

        logger.error(
            "Payment amount mismatch",
            extra={"user_id": order.user_id, "extra_data": {
                "order_code": order.order_code,
                "expected": int(order.final_price),
                "received": notification.amount,
                "gateway_success": notification.success,
            }}
        )
        return self._result(order, ReconciliationOutcome.AMOUNT_MISMATCH)

    async def _mark_paid(
        self,
        order: Order,
        notification: VerifiedNotification,
        gateway: PaymentGateway,
        source: NotificationSource,
    ) -> ReconciliationResult:
        order_code = order.order_code
        try:
            order.payment_status = PaymentStatus.PAID
            order.paid_at = utcnow()
            order.failure_reason = None

            if order.coupon_id is not None:
                await CouponService(self.db).commit(
                    order.coupon_id,
                    order.user_id,
                    order.id,
                    int(order.discount_amount),
                )

            await EnrollmentService(self.db).provision(order.user_id, order.course_id, order.id)
            await self.db.commit()
        except CouponExhausted:
            await self.db.rollback()
            return await self._coupon_exhausted(order_code, notification, gateway, source)

        log_business_event(
            "order_paid",
            user_id=order.user_id,
            order_code=order.order_code,
            amount=int(order.final_price),
            gateway=gateway.value,
            source=source.value,
            gateway_transaction_id=notification.gateway_transaction_id,
        )
        return self._result(order, ReconciliationOutcome.PAID)

    async def _coupon_exhausted(
        self,
        order_code: str,
        notification: VerifiedNotification,
        gateway: PaymentGateway,
        source: NotificationSource,
    ) -> ReconciliationResult:
        """Second transaction after the paid transition was rolled back"""
        order = await self.orders.get_by_code(order_code, for_update=True)

        recorded = await self._record(
            order, notification, gateway, source, ReconciliationOutcome.COUPON_EXHAUSTED
        )
        if not recorded:
            return await self._duplicate_result(order, notification, gateway)
        if order.payment_status != PaymentStatus.PENDING:
            return await self._already_processed(order, notification, gateway)

        order.payment_status = PaymentStatus.FAILED
        order.failure_reason = FailureReason.COUPON_EXHAUSTED
        order.needs_manual_review = True
        await self.db.commit()

        logger.critical(
            "Payment captured but coupon exhausted, order needs manual review",
            extra={"user_id": order.user_id, "extra_data": {
                "order_code": order.order_code,
                "coupon_id": order.coupon_id,
                "gateway": gateway.value,
                "gateway_transaction_id": notification.gateway_transaction_id,
                "amount": notification.amount,
            }}
        )
        return self._result(order, ReconciliationOutcome.COUPON_EXHAUSTED)

    @staticmethod
    def _result(
        order: Order,
        outcome: ReconciliationOutcome,
        duplicate: bool = False,
        message: Optional[str] = None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            order_id=order.id,
            order_code=order.order_code,
            status=PaymentStatus(order.payment_status),
            outcome=outcome,
            duplicate=duplicate,
            message=message or OUTCOME_MESSAGES[outcome],
        )
