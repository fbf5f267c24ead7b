from datetime import datetime
from typing import Iterable, Optional

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from jewelry_payments.errors import ConflictError, ErrorCode
from jewelry_payments.models import Order, PaymentTransaction, TransactionStatus

logger = structlog.get_logger().bind(component="transaction_store")


class TransactionStore:
    """PaymentTransaction persistence bound to one session.

    Status changes go through ``compare_and_set`` so that concurrent writers
    (duplicate callbacks, a callback racing a refund) cannot both win.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        existing = await self._find_active(transaction.merchant_transaction_id)
        if existing is not None:
            raise ConflictError(ErrorCode.DUPLICATE_TRANSACTION)

        self.session.add(transaction)
        try:
            # The partial unique index catches a concurrent insert that passed the check above
            await self.session.flush()
        except IntegrityError:
            logger.warning(
                "duplicate_transaction_rejected",
                merchant_transaction_id=transaction.merchant_transaction_id,
            )
            raise ConflictError(ErrorCode.DUPLICATE_TRANSACTION)
        return transaction

    async def find_by_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        return await self.session.get(PaymentTransaction, transaction_id)

    async def find_by_merchant_transaction_id(self, merchant_transaction_id: str) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.merchant_transaction_id == merchant_transaction_id)
            .order_by(
                case((PaymentTransaction.status == TransactionStatus.FAILED, 1), else_=0),
                PaymentTransaction.created_at.desc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_gateway_transaction_id(self, bankart_transaction_id: str) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction).where(PaymentTransaction.bankart_transaction_id == bankart_transaction_id)
        )
        return result.scalars().first()

    async def save(self, transaction: PaymentTransaction) -> PaymentTransaction:
        transaction.updated_at = datetime.utcnow()
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def compare_and_set(
        self,
        transaction_id: str,
        expected: Iterable[TransactionStatus],
        new_status: TransactionStatus,
        **values,
    ) -> bool:
        """Move the transaction to ``new_status`` only if it is still in one of ``expected``.

        Issues a single conditional UPDATE; returns True when this call changed the row.
        """
        statement = (
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id)
            .where(PaymentTransaction.status.in_(list(expected)))
            .values(status=new_status, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(statement)
        changed = result.rowcount == 1

        # Bring any loaded instance in line with the row
        await self.session.get(PaymentTransaction, transaction_id, populate_existing=True)
        return changed

    async def complete(self, transaction_id: str, uuid: Optional[str] = None) -> bool:
        values = {"uuid": uuid} if uuid else {}
        return await self.compare_and_set(
            transaction_id,
            [TransactionStatus.PENDING, TransactionStatus.FAILED],
            TransactionStatus.COMPLETED,
            **values,
        )

    async def fail(self, transaction_id: str, uuid: Optional[str] = None, error_message: Optional[str] = None) -> bool:
        values = {}
        if uuid:
            values["uuid"] = uuid
        if error_message:
            values["error_message"] = error_message
        return await self.compare_and_set(
            transaction_id,
            [TransactionStatus.PENDING, TransactionStatus.FAILED],
            TransactionStatus.FAILED,
            **values,
        )

    async def mark_refunded(self, transaction_id: str) -> bool:
        return await self.compare_and_set(transaction_id, [TransactionStatus.COMPLETED], TransactionStatus.REFUNDED)

    async def _find_active(self, merchant_transaction_id: str) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.merchant_transaction_id == merchant_transaction_id)
            .where(PaymentTransaction.status != TransactionStatus.FAILED)
            .limit(1)
        )
        return result.scalar_one_or_none()


class OrderRepository:
    """The slice of the order subsystem the payment flow needs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_id(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.shipping_address), selectinload(Order.items))
        )
        return result.scalar_one_or_none()

    async def save(self, order: Order) -> Order:
        order.updated_at = datetime.utcnow()
        self.session.add(order)
        await self.session.flush()
        return order
