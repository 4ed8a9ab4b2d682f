# coursepay/refunds/service.py
"""
Refund workflow: student request -> admin decision -> gateway refund.

A gateway error never rejects a request. Transient failures leave it
PENDING with needs_retry set and a retry scheduled. A timeout leaves it
PENDING with needs_manual_retry set: the gateway may have paid out, so
only an admin resends it, with the same gateway request id. A refusal
by the gateway leaves it PENDING for the admin to look at.
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import RefundRequest, RefundRequestStatus, RefundDecision, RefundTransaction, RefundType
from ..auth.policy import authorize
from ..auth.principal import Principal
from ..config import settings
from ..database import utcnow, as_utc
from ..enrollments.service import EnrollmentService
from ..error_handlers import (
    EligibilityWindowExceeded,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidStateTransition,
    NotFoundException,
    OrderNotRefundable,
    RefundAlreadyRequested,
    RefundRejected,
    ValidationException,
)
from ..logging_config import get_logger, log_business_event
from ..orders.models import Order, PaymentStatus
from ..orders.service import OrderService
from ..payments.base import ReconciliationOutcome, RefundInstruction
from ..payments.factory import ProviderRegistry
from ..payments.models import PaymentTransaction

logger = get_logger(__name__)


@dataclass
class RefundPolicy:
    max_progress_percent: float
    full_max_progress_percent: float
    window_days: int
    partial_fee_rate: float
    max_retries: int

    @classmethod
    def from_settings(cls) -> "RefundPolicy":
        return cls(
            max_progress_percent=settings.REFUND_MAX_PROGRESS_PERCENT,
            full_max_progress_percent=settings.REFUND_FULL_MAX_PROGRESS_PERCENT,
            window_days=settings.REFUND_WINDOW_DAYS,
            partial_fee_rate=settings.REFUND_PARTIAL_FEE_RATE,
            max_retries=settings.REFUND_MAX_RETRIES,
        )

    def suggested_amount(self, final_price: int, progress: Decimal) -> int:
        """Full refund early on, otherwise pro-rated minus a processing fee"""
        if progress <= Decimal(str(self.full_max_progress_percent)):
            return int(final_price)
        remaining_share = Decimal(1) - progress / Decimal(100)
        after_fee = Decimal(1) - Decimal(str(self.partial_fee_rate))
        amount = Decimal(final_price) * remaining_share * after_fee
        return max(0, int(amount.to_integral_value(rounding=ROUND_FLOOR)))


@dataclass
class RefundEligibility:
    order_id: int
    eligible: bool
    progress_percentage: Decimal
    days_since_payment: Optional[int]
    refund_type: Optional[RefundType] = None
    suggested_amount: int = 0
    message: str = ""
    # Set when a PENDING request already blocks a new one
    open_request_id: Optional[int] = None


# Called with (request_id, attempt) to queue a later retry
RetryScheduler = Callable[[int, int], None]


class RefundService:
    def __init__(
        self,
        db: AsyncSession,
        providers: Optional[ProviderRegistry] = None,
        policy: Optional[RefundPolicy] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
    ):
        self.db = db
        self.providers = providers or ProviderRegistry()
        self.policy = policy or RefundPolicy.from_settings()
        self.retry_scheduler = retry_scheduler
        self.orders = OrderService(db, self.providers)

    async def _open_request(self, order_id: int) -> Optional[RefundRequest]:
        result = await self.db.execute(
            select(RefundRequest).where(
                RefundRequest.order_id == order_id,
                RefundRequest.status == RefundRequestStatus.PENDING,
            )
        )
        return result.scalar_one_or_none()

    async def _get_request(self, request_id: int, for_update: bool = False) -> RefundRequest:
        query = select(RefundRequest).where(RefundRequest.id == request_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        refund_request = result.scalar_one_or_none()
        if not refund_request:
            raise NotFoundException("RefundRequest", request_id)
        return refund_request

    async def _progress(self, order: Order) -> Decimal:
        enrollment = await EnrollmentService(self.db).get_enrollment(order.user_id, order.course_id)
        return Decimal(str(enrollment.progress_percentage or 0)) if enrollment else Decimal(0)

    async def _assess(self, order: Order, progress: Decimal) -> int:
        """Suggested refund amount; raises when the order cannot be refunded now"""
        if order.payment_status != PaymentStatus.PAID:
            raise OrderNotRefundable(order.order_code, order.payment_status.value)

        if await self._open_request(order.id):
            raise RefundAlreadyRequested(order.id)

        paid_at = as_utc(order.paid_at)
        deadline = paid_at + timedelta(days=self.policy.window_days) if paid_at else None
        if deadline is not None and utcnow() > deadline:
            raise EligibilityWindowExceeded(
                f"Refunds are only available within {self.policy.window_days} days of purchase",
                details={"paid_at": paid_at.isoformat(), "window_days": self.policy.window_days},
            )

        if progress > Decimal(str(self.policy.max_progress_percent)):
            raise EligibilityWindowExceeded(
                f"Refunds are only available before completing {self.policy.max_progress_percent:g}% of the course",
                details={"progress": float(progress), "max_progress": self.policy.max_progress_percent},
            )

        return self.policy.suggested_amount(int(order.final_price), progress)

    async def check_eligibility(self, principal: Principal, order_id: int) -> RefundEligibility:
        """What a refund request for this order would get, without opening one"""
        order = await self.orders.get_by_id(order_id)
        authorize(principal, "refund_request", "check", obj=order)

        progress = await self._progress(order)
        paid_at = as_utc(order.paid_at)
        eligibility = RefundEligibility(
            order_id=order.id,
            eligible=False,
            progress_percentage=progress,
            days_since_payment=(utcnow() - paid_at).days if paid_at else None,
        )

        try:
            suggested = await self._assess(order, progress)
        except RefundAlreadyRequested as e:
            open_request = await self._open_request(order.id)
            eligibility.open_request_id = open_request.id if open_request else None
            eligibility.message = e.message
            return eligibility
        except (OrderNotRefundable, EligibilityWindowExceeded) as e:
            eligibility.message = e.message
            return eligibility

        eligibility.eligible = True
        eligibility.suggested_amount = suggested
        if suggested == int(order.final_price):
            eligibility.refund_type = RefundType.FULL
            eligibility.message = "Eligible for a full refund"
        else:
            eligibility.refund_type = RefundType.PARTIAL
            eligibility.message = (
                f"Eligible for a partial refund after {float(progress):g}% of the course, "
                f"minus a {self.policy.partial_fee_rate:.0%} processing fee"
            )
        return eligibility

    async def get_latest_request_for_order(self, principal: Principal, order_id: int) -> Optional[RefundRequest]:
        """Most recent request for the order in any status, None if there never was one"""
        order = await self.orders.get_by_id(order_id)
        authorize(principal, "refund_request", "check", obj=order)
        result = await self.db.execute(
            select(RefundRequest)
            .where(RefundRequest.order_id == order.id)
            .order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def request_refund(self, principal: Principal, order_id: int, reason: str) -> RefundRequest:
        """
        Open a refund request for a paid order.

        Raises:
            OrderNotRefundable: Order is not PAID
            RefundAlreadyRequested: An open request exists
            EligibilityWindowExceeded: Too late or too much of the course consumed
        """
        order = await self.orders.get_by_id(order_id, for_update=True)
        authorize(principal, "refund_request", "create", obj=order)

        progress = await self._progress(order)
        suggested = await self._assess(order, progress)

        refund_request = RefundRequest(
            order_id=order.id,
            student_id=order.user_id,
            reason=reason,
            status=RefundRequestStatus.PENDING,
            progress_percentage_at_request=progress,
            suggested_amount=suggested,
        )
        self.db.add(refund_request)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise RefundAlreadyRequested(order_id) from e
        await self.db.refresh(refund_request)

        log_business_event(
            "refund_requested",
            user_id=principal.user_id,
            order_code=order.order_code,
            progress=float(progress),
            suggested_amount=refund_request.suggested_amount,
        )
        return refund_request

    async def process_refund(
        self,
        principal: Principal,
        request_id: int,
        decision: RefundDecision,
        amount: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> RefundRequest:
        """
        Admin decision on a PENDING request.

        Raises:
            InvalidStateTransition: Request already decided
            GatewayUnavailable: Transient gateway failure, retry scheduled
            GatewayTimeout: Outcome unknown, waits for a manual retry
            RefundRejected: Gateway declined the refund
        """
        authorize(principal, "refund_request", "process")
        refund_request = await self._get_request(request_id, for_update=True)

        if refund_request.status != RefundRequestStatus.PENDING:
            raise InvalidStateTransition(
                "refund request", refund_request.status.value, RefundDecision(decision).value
            )

        refund_request.processed_by = principal.user_id
        if notes is not None:
            refund_request.admin_notes = notes

        if RefundDecision(decision) == RefundDecision.REJECT:
            refund_request.status = RefundRequestStatus.REJECTED
            refund_request.processed_at = utcnow()
            refund_request.needs_retry = False
            await self.db.commit()
            log_business_event(
                "refund_rejected",
                user_id=principal.user_id,
                refund_request_id=refund_request.id,
                order_id=refund_request.order_id,
            )
            return refund_request

        order = await self.orders.get_by_id(refund_request.order_id, for_update=True)
        if order.payment_status not in (PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED):
            raise OrderNotRefundable(order.order_code, order.payment_status.value)

        if amount is not None:
            refund_amount = amount
        elif refund_request.approved_amount is not None:
            refund_amount = int(refund_request.approved_amount)
        else:
            refund_amount = int(refund_request.suggested_amount)

        if refund_request.gateway_request_id and refund_amount != refund_request.approved_amount:
            # The earlier attempt may have gone through for the earlier amount
            raise ValidationException(
                "Refund amount cannot change once the gateway has been contacted",
                details={"amount": refund_amount, "approved_amount": refund_request.approved_amount},
            )

        remaining = int(order.final_price) - int(order.refunded_amount or 0)
        if not 0 < refund_amount <= remaining:
            raise ValidationException(
                "Refund amount must be positive and not exceed the refundable balance",
                details={"amount": refund_amount, "refundable": remaining},
            )
        refund_request.approved_amount = refund_amount

        return await self._execute_refund(refund_request, order)

    async def retry_refund(self, request_id: int) -> RefundRequest:
        """Re-attempt an approved refund whose gateway call failed transiently"""
        refund_request = await self._get_request(request_id, for_update=True)

        if (
            refund_request.status != RefundRequestStatus.PENDING
            or not refund_request.needs_retry
            or refund_request.needs_manual_retry
        ):
            await self.db.rollback()
            return refund_request

        if refund_request.retry_count >= self.policy.max_retries:
            refund_request.needs_retry = False
            refund_request.last_error = f"Gave up after {refund_request.retry_count} attempts: {refund_request.last_error}"
            await self.db.commit()
            logger.error(
                "Refund retry limit reached",
                extra={"extra_data": {"refund_request_id": request_id, "retry_count": refund_request.retry_count}}
            )
            return refund_request

        order = await self.orders.get_by_id(refund_request.order_id, for_update=True)
        return await self._execute_refund(refund_request, order)

    async def _captured_transaction(self, order: Order) -> PaymentTransaction:
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.order_id == order.id,
                PaymentTransaction.outcome == ReconciliationOutcome.PAID,
            )
            .order_by(PaymentTransaction.received_at.desc())
            .limit(1)
        )
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise OrderNotRefundable(order.order_code, order.payment_status.value)
        return transaction

    async def _execute_refund(self, refund_request: RefundRequest, order: Order) -> RefundRequest:
        amount = int(refund_request.approved_amount)
        already_refunded = int(order.refunded_amount or 0)
        captured = await self._captured_transaction(order)
        provider = self.providers.get(order.payment_gateway)

        if not refund_request.gateway_request_id:
            refund_request.gateway_request_id = uuid.uuid4().hex

        instruction = RefundInstruction(
            gateway_transaction_id=captured.gateway_transaction_id,
            amount=amount,
            order_code=order.order_code,
            full=already_refunded == 0 and amount == int(order.final_price),
            paid_at=as_utc(order.paid_at),
            reason=refund_request.reason,
            requested_by=refund_request.processed_by or "system",
            request_key=refund_request.gateway_request_id,
        )

        try:
            refund = await provider.issue_refund(instruction)
        except GatewayTimeout as e:
            refund_request.needs_retry = False
            refund_request.needs_manual_retry = True
            refund_request.last_error = e.message
            request_id = refund_request.id
            await self.db.commit()
            logger.error(
                "Refund request timed out, gateway outcome unknown",
                extra={"extra_data": {
                    "refund_request_id": request_id,
                    "gateway_request_id": instruction.request_key,
                    "error": e.message,
                }}
            )
            raise
        except GatewayUnavailable as e:
            refund_request.needs_retry = True
            refund_request.retry_count = (refund_request.retry_count or 0) + 1
            refund_request.last_error = e.message
            request_id, attempt = refund_request.id, refund_request.retry_count
            await self.db.commit()
            logger.warning(
                "Refund gateway unavailable, will retry",
                extra={"extra_data": {"refund_request_id": request_id, "attempt": attempt, "error": e.message}}
            )
            if self.retry_scheduler and attempt < self.policy.max_retries:
                self.retry_scheduler(request_id, attempt)
            raise
        except RefundRejected as e:
            refund_request.needs_retry = False
            refund_request.last_error = e.message
            await self.db.commit()
            logger.error(
                "Refund rejected by gateway",
                extra={"extra_data": {"refund_request_id": refund_request.id, "details": e.details}}
            )
            raise

        self.db.add(RefundTransaction(
            refund_request_id=refund_request.id,
            order_id=order.id,
            gateway=order.payment_gateway,
            provider_refund_id=refund.refund_id,
            amount=amount,
            status=refund.status,
            refund_metadata=refund.metadata,
        ))

        order.refunded_amount = already_refunded + amount
        fully_refunded = order.refunded_amount >= int(order.final_price)
        target = PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED
        if not order.can_transition_to(target):
            raise InvalidStateTransition("order", order.payment_status.value, target.value)
        order.payment_status = target

        if fully_refunded:
            await EnrollmentService(self.db).revoke(order.user_id, order.course_id)

        refund_request.status = RefundRequestStatus.APPROVED
        refund_request.processed_at = utcnow()
        refund_request.needs_retry = False
        refund_request.needs_manual_retry = False
        refund_request.last_error = None
        await self.db.commit()

        log_business_event(
            "refund_approved",
            user_id=order.user_id,
            order_code=order.order_code,
            amount=amount,
            refunded_total=order.refunded_amount,
            status=target.value,
            provider_refund_id=refund.refund_id,
        )
        return refund_request

    async def get_refund_request(self, principal: Principal, request_id: int) -> RefundRequest:
        refund_request = await self._get_request(request_id)
        authorize(principal, "refund_request", "read", obj=refund_request)
        return refund_request

    async def list_refund_requests(
        self,
        principal: Principal,
        status: Optional[RefundRequestStatus] = None,
        needs_retry: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[RefundRequest]:
        query = select(RefundRequest)
        if not principal.is_admin:
            query = query.where(RefundRequest.student_id == principal.user_id)
        if status is not None:
            query = query.where(RefundRequest.status == status)
        if needs_retry is not None:
            query = query.where(RefundRequest.needs_retry == needs_retry)
        result = await self.db.execute(
            query.order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())
