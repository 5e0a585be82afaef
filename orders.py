"""
Order placement, cancellation and admin status changes.

Every write an operation makes happens inside one store transaction: placing
an order inserts the order, takes stock, empties the cart and redeems the
coupon together or not at all. Validation runs first, inside the same
transaction, so the stock that was checked is the stock that gets decremented.
Each operation is a callable handed to `Store.run_in_transaction`; when the
store aborts on a write conflict the whole callable runs again, and a checkout
that lost the race then fails on the committed stock with InsufficientStockError.
Notifications are published to the outbox only after the transaction commits.
"""

import logging
import secrets
import string
import time
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from coupons import CouponQuote, redeem_coupon, validate_coupon
from errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStateTransitionError,
    UnauthorizedError,
)
from notifications import ORDER_CONFIRMED, ORDER_DELIVERED, ORDER_SHIPPED, Outbox
from schemas import (
    MarkShipped,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    SetPaymentStatus,
    utcnow,
)
from stores import Session, Store

logger = logging.getLogger(__name__)

BASE36 = string.digits + string.ascii_uppercase

# action -> (statuses it may be applied from, resulting status)
TRANSITIONS: Dict[str, Tuple[FrozenSet[OrderStatus], OrderStatus]] = {
    "confirm": (frozenset({OrderStatus.PENDING}), OrderStatus.CONFIRMED),
    "start_processing": (frozenset({OrderStatus.CONFIRMED}), OrderStatus.PROCESSING),
    "ship": (frozenset({OrderStatus.PROCESSING}), OrderStatus.SHIPPED),
    "deliver": (frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED),
    "return": (frozenset({OrderStatus.DELIVERED}), OrderStatus.RETURNED),
    "cancel": (
        frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}),
        OrderStatus.CANCELLED,
    ),
}

CUSTOMER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(BASE36[rem])
    return "".join(reversed(out))


def generate_order_number(prefix: str = "HOL") -> str:
    """Timestamp plus random suffix; unique in practice, not guaranteed."""
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(BASE36) for _ in range(4))
    return f"{prefix}-{timestamp}-{suffix}"


class OrderService:
    def __init__(
        self,
        store: Store,
        outbox: Outbox,
        free_shipping_threshold: int = 500000,
        shipping_flat_fee: int = 50000,
        order_number_prefix: str = "HOL",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.outbox = outbox
        self.free_shipping_threshold = free_shipping_threshold
        self.shipping_flat_fee = shipping_flat_fee
        self.order_number_prefix = order_number_prefix
        self.clock = clock

    def shipping_cost(self, subtotal: int) -> int:
        return 0 if subtotal > self.free_shipping_threshold else self.shipping_flat_fee

    def place_order(
        self,
        user_id: Optional[str],
        address_id: str,
        payment_method: PaymentMethod = PaymentMethod.COD,
        coupon_code: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """Turn the user's cart into an order.

        Raises, before anything is written: UnauthorizedError, EmptyCartError,
        AddressNotFoundError, ProductNotFoundError, InsufficientStockError and
        the coupon rule errors. A store failure while writing rolls back the
        whole order and surfaces as TransientStoreError.
        """
        if not user_id:
            raise UnauthorizedError()

        def place(tx: Session) -> Order:
            lines = tx.carts.list_lines(user_id)
            if not lines:
                raise EmptyCartError()

            address = tx.addresses.find_owned(address_id, user_id)

            # A product may appear on several lines (different sizes/colors);
            # stock is checked against the combined quantity.
            needed: Dict[str, int] = {}
            for line in lines:
                needed[line.product_id] = needed.get(line.product_id, 0) + line.quantity

            products = {}
            for product_id, quantity in needed.items():
                product = tx.products.get_stock_and_price(product_id)
                if product.stock < quantity:
                    raise InsufficientStockError(product_id, product.name, product.stock)
                products[product_id] = product

            items = [
                OrderItem(
                    product_id=line.product_id,
                    name=products[line.product_id].name,
                    quantity=line.quantity,
                    price=products[line.product_id].price,
                    size=line.size,
                    color=line.color,
                )
                for line in lines
            ]
            subtotal = sum(item.line_total for item in items)
            shipping_cost = self.shipping_cost(subtotal)

            quote: Optional[CouponQuote] = None
            discount = 0
            if coupon_code:
                quote = validate_coupon(tx, coupon_code, subtotal, user_id, now=self.clock())
                # A fixed coupon worth more than the goods never eats into shipping.
                discount = min(quote.discount, subtotal)

            for product_id, quantity in needed.items():
                tx.products.decrement_stock(product_id, quantity)

            order = tx.orders.insert(Order(
                order_number=generate_order_number(self.order_number_prefix),
                user_id=user_id,
                address_id=address.id,
                shipping_address=address,
                items=items,
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                discount=discount,
                total=subtotal + shipping_cost - discount,
                payment_method=payment_method,
                coupon_code=quote.coupon.code if quote else None,
                notes=notes,
            ))

            tx.carts.clear(user_id)

            if quote:
                redeem_coupon(tx, quote.coupon_id, user_id, order.id)
            return order

        order = self.store.run_in_transaction(place)
        logger.info(
            "Order %s placed by user %s: %d items, total %d",
            order.order_number, user_id, len(order.items), order.total,
        )
        self.outbox.publish(ORDER_CONFIRMED, order.id)
        return order

    def _cancel(self, tx: Session, order: Order) -> Order:
        order = tx.orders.save(order.model_copy(update={"status": OrderStatus.CANCELLED}))
        for item in order.items:
            tx.products.increment_stock(item.product_id, item.quantity)
        return order

    def cancel_order(self, order_number: str, user_id: str) -> Order:
        """Customer cancellation; coupon usage is kept."""
        def cancel(tx: Session) -> Order:
            order = tx.orders.find_by_number(order_number)
            if order.user_id != user_id:
                raise UnauthorizedError()
            if order.status not in CUSTOMER_CANCELLABLE:
                raise InvalidStateTransitionError(
                    order.status.value, "cancel", "Order cannot be cancelled at this stage"
                )
            return self._cancel(tx, order)

        order = self.store.run_in_transaction(cancel)
        logger.info("Order %s cancelled by its owner", order_number)
        return order

    def apply_command(self, order_number: str, command) -> Order:
        """Apply an admin command from schemas.OrderCommand."""
        def apply(tx: Session) -> Order:
            order = tx.orders.find_by_number(order_number)

            if isinstance(command, SetPaymentStatus):
                return tx.orders.save(order.model_copy(update={"payment_status": command.payment_status}))

            allowed_from, target = TRANSITIONS[command.action]
            if order.status not in allowed_from:
                raise InvalidStateTransitionError(order.status.value, command.action.replace("_", " "))
            if target == OrderStatus.CANCELLED:
                return self._cancel(tx, order)
            updates = {"status": target}
            if isinstance(command, MarkShipped):
                updates["tracking_number"] = command.tracking_number
            return tx.orders.save(order.model_copy(update=updates))

        order = self.store.run_in_transaction(apply)
        logger.info("Order %s: admin applied %s", order_number, command.action)
        if command.action == "ship":
            self.outbox.publish(ORDER_SHIPPED, order.id, tracking_number=order.tracking_number)
        elif command.action == "deliver":
            self.outbox.publish(ORDER_DELIVERED, order.id)
        return order

    def get_order(self, order_number: str, user_id: str, is_admin: bool = False) -> Order:
        with self.store.transaction() as tx:
            order = tx.orders.find_by_number(order_number)
        if order.user_id != user_id and not is_admin:
            raise UnauthorizedError()
        return order

    def list_orders(self, user_id: str) -> List[Order]:
        with self.store.transaction() as tx:
            return tx.orders.list_for_user(user_id)

    def list_all(
        self, status: Optional[OrderStatus] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[Order], int]:
        with self.store.transaction() as tx:
            orders = tx.orders.list_all(status, skip=(page - 1) * limit, limit=limit)
            total = tx.orders.count(status)
        return orders, total
