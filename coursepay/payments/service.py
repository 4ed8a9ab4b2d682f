# coursepay/payments/service.py
"""Read access to the gateway notification ledger"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .base import PaymentGateway, ReconciliationOutcome
from .models import PaymentTransaction
from ..auth.policy import authorize
from ..auth.principal import Principal
from ..error_handlers import NotFoundException
from ..orders.models import Order


class PaymentTransactionService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_transactions(
        self,
        principal: Principal,
        gateway: Optional[PaymentGateway] = None,
        outcome: Optional[ReconciliationOutcome] = None,
        order_id: Optional[int] = None,
        received_from: Optional[datetime] = None,
        received_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[PaymentTransaction]:
        """Newest first; students only see transactions on their own orders"""
        query = select(PaymentTransaction)
        if not principal.is_admin:
            query = query.join(Order, Order.id == PaymentTransaction.order_id).where(
                Order.user_id == principal.user_id
            )
        if gateway is not None:
            query = query.where(PaymentTransaction.gateway == gateway)
        if outcome is not None:
            query = query.where(PaymentTransaction.outcome == outcome)
        if order_id is not None:
            query = query.where(PaymentTransaction.order_id == order_id)
        if received_from is not None:
            query = query.where(PaymentTransaction.received_at >= received_from)
        if received_to is not None:
            query = query.where(PaymentTransaction.received_at <= received_to)

        result = await self.db.execute(
            query.order_by(PaymentTransaction.received_at.desc(), PaymentTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_transaction(self, principal: Principal, transaction_id: int) -> PaymentTransaction:
        result = await self.db.execute(
            select(PaymentTransaction, Order)
            .join(Order, Order.id == PaymentTransaction.order_id)
            .where(PaymentTransaction.id == transaction_id)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundException("PaymentTransaction", transaction_id)
        transaction, order = row
        authorize(principal, "payment_transaction", "read", obj=order)
        return transaction
