"""Tests for order placement, cancellation and the admin lifecycle."""

import re
import threading

import pytest

from conftest import add_to_cart, cart_of, make_address, make_coupon, make_product, make_user, stock_of
from errors import (
    AddressNotFoundError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStateTransitionError,
    PerUserLimitReachedError,
    ProductNotFoundError,
    UnauthorizedError,
)
from memory_store import MemoryOrderStore
from notifications import ORDER_CONFIRMED, ORDER_DELIVERED, ORDER_SHIPPED, Outbox
from orders import OrderService, generate_order_number, to_base36
from schemas import (
    CancelOrder,
    ConfirmOrder,
    DiscountType,
    MarkDelivered,
    MarkReturned,
    MarkShipped,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    SetPaymentStatus,
    StartProcessing,
)


class TestPlaceOrder:
    def test_end_to_end(self, store, service, outbox, user, address, product):
        add_to_cart(store, user.id, product.id, quantity=2, size="M")

        order = service.place_order(user.id, address.id, payment_method=PaymentMethod.UPI, notes="ring twice")

        assert order.subtotal == 1000
        assert order.shipping_cost == 50
        assert order.discount == 0
        assert order.total == 1050
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.payment_method == PaymentMethod.UPI
        assert order.items[0].price == 500
        assert order.items[0].size == "M"
        assert order.shipping_address.city == "Bengaluru"
        assert order.notes == "ring twice"
        assert stock_of(store, product.id) == 8
        assert cart_of(store, user.id) == []
        assert [(e.kind, e.order_id) for e in outbox.pending] == [(ORDER_CONFIRMED, order.id)]

    def test_free_shipping_above_threshold(self, store, service, user, address):
        product = make_product(store, price=2600, stock=5)
        add_to_cart(store, user.id, product.id, quantity=2)
        order = service.place_order(user.id, address.id)
        assert order.subtotal == 5200
        assert order.shipping_cost == 0
        assert order.total == 5200

    def test_shipping_charged_at_threshold(self, store, service, user, address):
        product = make_product(store, price=2500, stock=5)
        add_to_cart(store, user.id, product.id, quantity=2)
        assert service.place_order(user.id, address.id).shipping_cost == 50

    def test_prices_are_frozen(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id)
        order = service.place_order(user.id, address.id)
        store._tables["product"][product.id]["price"] = 9999
        with store.transaction() as tx:
            assert tx.orders.get(order.id).items[0].price == 500

    def test_order_number_format(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id)
        order = service.place_order(user.id, address.id)
        assert re.fullmatch(r"HOL-[0-9A-Z]+-[0-9A-Z]{4}", order.order_number)

    def test_requires_user(self, service, address):
        with pytest.raises(UnauthorizedError):
            service.place_order(None, address.id)

    def test_empty_cart(self, service, user, address):
        with pytest.raises(EmptyCartError, match="Cart is empty"):
            service.place_order(user.id, address.id)

    def test_foreign_address(self, store, service, user, product):
        other = make_user(store, email="ravi@example.com")
        foreign = make_address(store, other.id)
        add_to_cart(store, user.id, product.id)
        with pytest.raises(AddressNotFoundError):
            service.place_order(user.id, foreign.id)

    def test_insufficient_stock_names_product(self, store, service, user, address):
        product = make_product(store, stock=1, name="Silk Scarf")
        add_to_cart(store, user.id, product.id, quantity=2)
        with pytest.raises(InsufficientStockError) as exc_info:
            service.place_order(user.id, address.id)
        assert str(exc_info.value) == "Silk Scarf only has 1 items in stock"
        assert exc_info.value.available == 1
        assert stock_of(store, product.id) == 1

    def test_stock_checked_across_lines_of_same_product(self, store, service, user, address):
        product = make_product(store, stock=3)
        add_to_cart(store, user.id, product.id, quantity=2, size="S")
        add_to_cart(store, user.id, product.id, quantity=2, size="L")
        with pytest.raises(InsufficientStockError):
            service.place_order(user.id, address.id)
        assert stock_of(store, product.id) == 3
        assert len(cart_of(store, user.id)) == 2

    def test_inactive_product(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id)
        store._tables["product"][product.id]["is_active"] = False
        with pytest.raises(ProductNotFoundError):
            service.place_order(user.id, address.id)


class TestCouponsAtCheckout:
    def test_discount_applied_and_redeemed(self, store, service, user, address, product):
        make_coupon(store, "SAVE10", discount_value=10)
        add_to_cart(store, user.id, product.id, quantity=2)

        order = service.place_order(user.id, address.id, coupon_code="save10")

        assert order.discount == 100
        assert order.total == 950
        assert order.coupon_code == "SAVE10"
        with store.transaction() as tx:
            coupon = tx.coupons.find_by_code("SAVE10")
            assert coupon.usage_count == 1
            assert tx.coupons.count_usage_by_user(coupon.id, user.id) == 1

    def test_second_checkout_with_same_coupon_is_rejected(self, store, service, user, address, product):
        make_coupon(store)
        add_to_cart(store, user.id, product.id)
        service.place_order(user.id, address.id, coupon_code="SAVE10")
        add_to_cart(store, user.id, product.id)
        with pytest.raises(PerUserLimitReachedError):
            service.place_order(user.id, address.id, coupon_code="SAVE10")
        assert len(cart_of(store, user.id)) == 1

    def test_fixed_discount_never_exceeds_subtotal(self, store, service, user, address, product):
        make_coupon(store, "BIG", discount_type=DiscountType.FIXED, discount_value=5000)
        add_to_cart(store, user.id, product.id)
        order = service.place_order(user.id, address.id, coupon_code="BIG")
        assert order.discount == 500
        assert order.total == 50


class TestAtomicity:
    def test_failed_insert_leaves_no_trace(self, store, service, user, address, product, monkeypatch):
        make_coupon(store)
        add_to_cart(store, user.id, product.id, quantity=2)

        def broken_insert(self, order):
            raise RuntimeError("write conflict")

        monkeypatch.setattr(MemoryOrderStore, "insert", broken_insert)
        with pytest.raises(RuntimeError):
            service.place_order(user.id, address.id, coupon_code="SAVE10")

        assert stock_of(store, product.id) == 10
        assert len(cart_of(store, user.id)) == 1
        assert service.list_orders(user.id) == []
        with store.transaction() as tx:
            assert tx.coupons.find_by_code("SAVE10").usage_count == 0

    def test_concurrent_orders_never_oversell(self, store, service):
        product = make_product(store, stock=5)
        buyers = []
        for i in range(6):
            buyer = make_user(store, email=f"buyer{i}@example.com")
            addr = make_address(store, buyer.id)
            add_to_cart(store, buyer.id, product.id, quantity=2)
            buyers.append((buyer.id, addr.id))

        placed, rejected = [], []
        barrier = threading.Barrier(len(buyers))

        def checkout(user_id, address_id):
            barrier.wait()
            try:
                placed.append(service.place_order(user_id, address_id))
            except InsufficientStockError:
                rejected.append(user_id)

        threads = [threading.Thread(target=checkout, args=b) for b in buyers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(placed) == 2
        assert len(rejected) == 4
        assert stock_of(store, product.id) == 1


class WriteConflict(Exception):
    pass


class RacingStore:
    """Memory store whose first unit of work loses a write conflict to `rival`.

    The losing attempt is rolled back, `rival` commits in between, and the same
    unit of work then runs again from scratch.
    """

    def __init__(self, inner, rival):
        self.inner = inner
        self.rival = rival
        self.attempts = 0

    def transaction(self):
        return self.inner.transaction()

    def run_in_transaction(self, work):
        if self.attempts == 0:
            self.attempts += 1
            try:
                with self.inner.transaction() as tx:
                    work(tx)
                    raise WriteConflict()
            except WriteConflict:
                pass
            self.rival()
        self.attempts += 1
        return self.inner.run_in_transaction(work)

    def describe(self):
        return self.inner.describe()


class TestConflictRetry:
    def _race(self, store, notifier, stock):
        product = make_product(store, stock=stock)
        buyers = []
        for name in ("first", "second"):
            buyer = make_user(store, email=f"{name}@example.com")
            addr = make_address(store, buyer.id)
            add_to_cart(store, buyer.id, product.id, quantity=2)
            buyers.append((buyer.id, addr.id))

        rival_service = OrderService(store, Outbox(notifier))
        racing = RacingStore(store, lambda: rival_service.place_order(*buyers[1]))
        return product, buyers, racing, OrderService(racing, Outbox(notifier))

    def test_loser_fails_on_committed_stock(self, store, notifier):
        product, buyers, racing, service = self._race(store, notifier, stock=3)

        with pytest.raises(InsufficientStockError) as exc_info:
            service.place_order(*buyers[0])

        assert racing.attempts == 2
        assert exc_info.value.available == 1
        assert stock_of(store, product.id) == 1
        assert len(cart_of(store, buyers[0][0])) == 1
        assert service.list_orders(buyers[0][0]) == []

    def test_rerun_succeeds_once_when_stock_remains(self, store, notifier):
        product, buyers, racing, service = self._race(store, notifier, stock=4)

        service.place_order(*buyers[0])

        assert racing.attempts == 2
        assert stock_of(store, product.id) == 0
        assert len(service.list_orders(buyers[0][0])) == 1
        assert len(service.list_orders(buyers[1][0])) == 1


class TestCancel:
    def test_cancel_restores_stock(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id, quantity=3)
        order = service.place_order(user.id, address.id)
        assert stock_of(store, product.id) == 7

        cancelled = service.cancel_order(order.order_number, user.id)

        assert cancelled.status == OrderStatus.CANCELLED
        assert stock_of(store, product.id) == 10

    def test_second_cancel_is_rejected(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id)
        order = service.place_order(user.id, address.id)
        service.cancel_order(order.order_number, user.id)
        with pytest.raises(InvalidStateTransitionError, match="cannot be cancelled at this stage"):
            service.cancel_order(order.order_number, user.id)
        assert stock_of(store, product.id) == 10

    def test_customer_cannot_cancel_once_processing(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id)
        order = service.place_order(user.id, address.id)
        service.apply_command(order.order_number, ConfirmOrder())
        service.apply_command(order.order_number, StartProcessing())
        with pytest.raises(InvalidStateTransitionError):
            service.cancel_order(order.order_number, user.id)

    def test_only_owner_can_cancel(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id)
        order = service.place_order(user.id, address.id)
        other = make_user(store, email="ravi@example.com")
        with pytest.raises(UnauthorizedError):
            service.cancel_order(order.order_number, other.id)

    def test_cancel_keeps_coupon_usage(self, store, service, user, address, product):
        make_coupon(store)
        add_to_cart(store, user.id, product.id)
        order = service.place_order(user.id, address.id, coupon_code="SAVE10")
        service.cancel_order(order.order_number, user.id)
        with store.transaction() as tx:
            assert tx.coupons.find_by_code("SAVE10").usage_count == 1


class TestAdminCommands:
    @pytest.fixture
    def order(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id, quantity=2)
        return service.place_order(user.id, address.id)

    def test_full_lifecycle(self, service, outbox, order):
        outbox.flush()
        n = order.order_number
        assert service.apply_command(n, ConfirmOrder()).status == OrderStatus.CONFIRMED
        assert service.apply_command(n, StartProcessing()).status == OrderStatus.PROCESSING
        shipped = service.apply_command(n, MarkShipped(tracking_number="AWB123"))
        assert shipped.status == OrderStatus.SHIPPED
        assert shipped.tracking_number == "AWB123"
        assert service.apply_command(n, MarkDelivered()).status == OrderStatus.DELIVERED
        assert service.apply_command(n, MarkReturned()).status == OrderStatus.RETURNED

        kinds = [(e.kind, e.payload) for e in outbox.pending]
        assert kinds == [(ORDER_SHIPPED, {"tracking_number": "AWB123"}), (ORDER_DELIVERED, {})]

    def test_skipping_a_step_is_rejected(self, service, order):
        with pytest.raises(InvalidStateTransitionError, match="Cannot ship an order that is PENDING"):
            service.apply_command(order.order_number, MarkShipped(tracking_number="AWB1"))

    def test_admin_cancel_restores_stock(self, store, service, order, product):
        service.apply_command(order.order_number, ConfirmOrder())
        service.apply_command(order.order_number, StartProcessing())
        cancelled = service.apply_command(order.order_number, CancelOrder())
        assert cancelled.status == OrderStatus.CANCELLED
        assert stock_of(store, product.id) == 10

    def test_cannot_cancel_shipped(self, service, order):
        n = order.order_number
        service.apply_command(n, ConfirmOrder())
        service.apply_command(n, StartProcessing())
        service.apply_command(n, MarkShipped(tracking_number="AWB1"))
        with pytest.raises(InvalidStateTransitionError):
            service.apply_command(n, CancelOrder())

    def test_payment_status_is_independent(self, service, order):
        updated = service.apply_command(order.order_number, SetPaymentStatus(payment_status=PaymentStatus.PAID))
        assert updated.payment_status == PaymentStatus.PAID
        assert updated.status == OrderStatus.PENDING


class TestQueries:
    def test_get_order_access(self, store, service, user, address, product):
        add_to_cart(store, user.id, product.id)
        order = service.place_order(user.id, address.id)
        other = make_user(store, email="ravi@example.com")
        assert service.get_order(order.order_number, user.id).id == order.id
        assert service.get_order(order.order_number, other.id, is_admin=True).id == order.id
        with pytest.raises(UnauthorizedError):
            service.get_order(order.order_number, other.id)

    def test_list_all_paginates(self, store, service, user, address, product):
        for _ in range(3):
            add_to_cart(store, user.id, product.id)
            service.place_order(user.id, address.id)
        page, total = service.list_all(page=2, limit=2)
        assert total == 3
        assert len(page) == 1
        _, pending = service.list_all(status=OrderStatus.PENDING)
        _, cancelled = service.list_all(status=OrderStatus.CANCELLED)
        assert (pending, cancelled) == (3, 0)


def test_base36():
    assert to_base36(0) == "0"
    assert to_base36(35) == "Z"
    assert to_base36(36) == "10"


def test_generate_order_number_uses_prefix():
    assert generate_order_number("TST").startswith("TST-")
