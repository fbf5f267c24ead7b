import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import relationship

from jewelry_payments.database import Base


def _new_id() -> str:
    return str(uuid4())


def _status_column(enum_class, default):
    # Stored as the lowercase value ("pending"), not the member name
    return Column(
        Enum(
            enum_class,
            native_enum=False,
            length=32,
            values_callable=lambda members: [member.value for member in members],
        ),
        default=default,
        nullable=False,
    )


class OrderStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    REFUNDED = "refunded"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


class OrderPaymentStatus(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


REFUND_SUFFIX = "-refund"


class ShippingAddress(Base):
    __tablename__ = "shipping_addresses"

    id = Column(String(36), primary_key=True, default=_new_id)
    full_name = Column(String, nullable=False)
    address = Column(String, nullable=False)
    city = Column(String, nullable=False)
    country = Column(String, nullable=False)
    postal_code = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, index=True, default=_new_id)
    email = Column(String, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(String, nullable=False, default="card")
    shipping_method = Column(String, nullable=False, default="standard")
    shipping_address_id = Column(String(36), ForeignKey("shipping_addresses.id"), nullable=True)
    status = _status_column(OrderStatus, OrderStatus.PENDING)
    payment_status = _status_column(OrderPaymentStatus, OrderPaymentStatus.PENDING)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    shipping_address = relationship(ShippingAddress, lazy="raise")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="raise")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)

    order = relationship(Order, back_populates="items", lazy="raise")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        # One live attempt per merchant transaction id; failed attempts may pile up
        Index(
            "uq_payment_transactions_active_merchant_id",
            "merchant_transaction_id",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
            sqlite_where=text("status <> 'failed'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    merchant_transaction_id = Column(String, nullable=False, index=True)
    bankart_transaction_id = Column(String, nullable=True, index=True)  # purchaseId
    uuid = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = _status_column(TransactionStatus, TransactionStatus.PENDING)
    redirect_url = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_refund(self) -> bool:
        return self.merchant_transaction_id.endswith(REFUND_SUFFIX)
