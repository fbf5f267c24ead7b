from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from jewelry_payments.config import Settings
from jewelry_payments.coordinator import OrderStateCoordinator
from jewelry_payments.database import create_session_factory, init_db
from jewelry_payments.gateway import GatewayClient
from jewelry_payments.models import Order, OrderItem, OrderStatus, ShippingAddress
from jewelry_payments.notifications import NotificationGateway
from jewelry_payments.schemas import GatewayResponse

CUSTOMER_EMAIL = "ana.krasniqi@example.com"
ADMIN_EMAIL = "admin@shop.test"


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        gateway_base_url="https://gateway.test/api/v3",
        gateway_api_key="merchant-api-key",
        gateway_shared_secret="shared-secret",
        gateway_username="merchant-user",
        gateway_password="merchant-password",
        callback_base_url="https://api.shop.test",
        admin_email=ADMIN_EMAIL,
    )


@pytest.fixture
async def session_factory():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def mock_gateway():
    gateway = AsyncMock(spec=GatewayClient)
    gateway.debit.return_value = GatewayResponse(
        success=True,
        uuid="U1",
        purchase_id="P1",
        return_type="REDIRECT",
        redirect_url="https://gw/pay/1",
    )
    gateway.refund.return_value = GatewayResponse(success=True, uuid="R1", purchase_id="RP1")
    return gateway


@pytest.fixture
def mock_sender():
    sender = AsyncMock()
    sender.send.return_value = {"messageId": "msg-1"}
    return sender


@pytest.fixture
async def coordinator(settings, session_factory, mock_gateway, mock_sender):
    notifications = NotificationGateway(mock_sender, admin_email=ADMIN_EMAIL, shop_name="Test Jewelry")
    yield OrderStateCoordinator(settings, session_factory, mock_gateway, notifications)
    await notifications.drain(timeout=5)


@pytest.fixture
def make_order(session_factory):
    async def _make_order(
        order_id=None,
        total=Decimal("49.99"),
        status=OrderStatus.PENDING,
        with_address=True,
        full_name="Ana Maria Krasniqi",
    ):
        order = Order(
            id=order_id or str(uuid4()),
            email=CUSTOMER_EMAIL,
            subtotal=total,
            shipping_cost=Decimal("0.00"),
            total=total,
            payment_method="card",
            shipping_method="standard",
            status=status,
        )
        if with_address:
            order.shipping_address = ShippingAddress(
                full_name=full_name,
                address="Rruga e Durresit 12",
                city="Tirana",
                country="AL",
                postal_code="1001",
                phone="+355691234567",
            )
        order.items = [
            OrderItem(product_name="Gold ring 18k", quantity=1, price=total, total=total),
        ]
        async with session_factory() as session:
            async with session.begin():
                session.add(order)
        return order

    return _make_order


def customer_emails(mock_sender):
    return [call for call in mock_sender.send.call_args_list if call.args[0] == CUSTOMER_EMAIL]
