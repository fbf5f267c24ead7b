from decimal import Decimal

import pytest

from jewelry_payments.errors import ConflictError
from jewelry_payments.models import PaymentTransaction, TransactionStatus
from jewelry_payments.store import OrderRepository, TransactionStore


def transaction_for(order_id, status=TransactionStatus.PENDING, merchant_transaction_id=None, **kwargs):
    return PaymentTransaction(
        order_id=order_id,
        merchant_transaction_id=merchant_transaction_id or order_id,
        amount=Decimal("49.99"),
        currency="EUR",
        status=status,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_create_rejects_second_active_transaction(session_factory, make_order):
    """
    Test case 1: A second non-failed transaction for the same merchant id is a conflict.
    """
    order = await make_order()

    async with session_factory() as session:
        async with session.begin():
            await TransactionStore(session).create(transaction_for(order.id))

    with pytest.raises(ConflictError):
        async with session_factory() as session:
            async with session.begin():
                await TransactionStore(session).create(transaction_for(order.id))


@pytest.mark.asyncio
async def test_create_allows_retry_after_failure(session_factory, make_order):
    """
    Test case 2: Failed attempts do not block a new one, and lookups prefer the live record.
    """
    order = await make_order()

    async with session_factory() as session:
        async with session.begin():
            await TransactionStore(session).create(
                transaction_for(order.id, status=TransactionStatus.FAILED, error_message="declined")
            )

    async with session_factory() as session:
        async with session.begin():
            retry = await TransactionStore(session).create(transaction_for(order.id))

    async with session_factory() as session:
        found = await TransactionStore(session).find_by_merchant_transaction_id(order.id)

    assert found.id == retry.id
    assert found.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_compare_and_set_only_moves_expected_status(session_factory, make_order):
    order = await make_order()

    async with session_factory() as session:
        async with session.begin():
            transaction = await TransactionStore(session).create(transaction_for(order.id))

    async with session_factory() as session:
        async with session.begin():
            store = TransactionStore(session)
            assert await store.complete(transaction.id, uuid="U1") is True
            # The second delivery finds the row already completed
            assert await store.complete(transaction.id, uuid="U1") is False

    async with session_factory() as session:
        stored = await TransactionStore(session).find_by_id(transaction.id)

    assert stored.status == TransactionStatus.COMPLETED
    assert stored.uuid == "U1"


@pytest.mark.asyncio
async def test_compare_and_set_refreshes_loaded_instance(session_factory, make_order):
    order = await make_order()

    async with session_factory() as session:
        async with session.begin():
            store = TransactionStore(session)
            transaction = await store.create(transaction_for(order.id))
            await store.fail(transaction.id, error_message="Card declined")

            assert transaction.status == TransactionStatus.FAILED
            assert transaction.error_message == "Card declined"


@pytest.mark.asyncio
async def test_mark_refunded_requires_completed(session_factory, make_order):
    order = await make_order()

    async with session_factory() as session:
        async with session.begin():
            store = TransactionStore(session)
            transaction = await store.create(transaction_for(order.id))
            assert await store.mark_refunded(transaction.id) is False
            await store.complete(transaction.id)
            assert await store.mark_refunded(transaction.id) is True


@pytest.mark.asyncio
async def test_find_by_gateway_transaction_id(session_factory, make_order):
    order = await make_order()

    async with session_factory() as session:
        async with session.begin():
            await TransactionStore(session).create(transaction_for(order.id, bankart_transaction_id="P1"))

    async with session_factory() as session:
        store = TransactionStore(session)
        found = await store.find_by_gateway_transaction_id("P1")
        missing = await store.find_by_gateway_transaction_id("P404")

    assert found.merchant_transaction_id == order.id
    assert missing is None


@pytest.mark.asyncio
async def test_order_repository_loads_address_and_items(session_factory, make_order):
    order = await make_order()

    async with session_factory() as session:
        loaded = await OrderRepository(session).find_by_id(order.id)

    assert loaded.shipping_address.full_name == "Ana Maria Krasniqi"
    assert [item.product_name for item in loaded.items] == ["Gold ring 18k"]
    assert loaded.total == Decimal("49.99")
