"""Store interfaces the order engine, coupon rules and routes depend on.

Two implementations exist: `database.MongoStore` (production) and
`memory_store.MemoryStore` (no DATABASE_URL, tests). Every operation runs
inside a `Store.transaction()`; leaving the block normally commits, raising
out of it rolls back every write made through the session. Writes that race
on the same documents (stock, coupon counters) use `Store.run_in_transaction`
so a conflicting attempt is re-run from scratch.
"""

from typing import Callable, ContextManager, List, Optional, Protocol, TypeVar

from schemas import (
    Address,
    CartItem,
    Coupon,
    Order,
    OrderStatus,
    Product,
    StockAndPrice,
    User,
)


T = TypeVar("T")


class ProductStore(Protocol):
    def get_stock_and_price(self, product_id: str) -> StockAndPrice:
        """Raises ProductNotFoundError for unknown or unlisted products."""
        ...

    def decrement_stock(self, product_id: str, quantity: int) -> None:
        """Atomically take `quantity` units.

        Raises InsufficientStockError, leaving stock untouched, when fewer
        than `quantity` units are left.
        """
        ...

    def increment_stock(self, product_id: str, quantity: int) -> None: ...

    def insert(self, product: Product) -> Product: ...

    def list(self, category: Optional[str] = None, limit: int = 100) -> List[Product]: ...


class CartStore(Protocol):
    def list_lines(self, user_id: str) -> List[CartItem]: ...

    def add_line(self, user_id: str, item: CartItem) -> List[CartItem]:
        """Merge into an existing line for the same product/size/color."""
        ...

    def clear(self, user_id: str) -> None: ...


class AddressStore(Protocol):
    def find_owned(self, address_id: str, user_id: str) -> Address:
        """Raises AddressNotFoundError unless the address belongs to `user_id`."""
        ...

    def insert(self, address: Address) -> Address: ...

    def list_for_user(self, user_id: str) -> List[Address]: ...


class CouponStore(Protocol):
    def find_by_code(self, code: str) -> Coupon:
        """Case-insensitive lookup. Raises CouponNotFoundError."""
        ...

    def count_usage_by_user(self, coupon_id: str, user_id: str) -> int: ...

    def has_usage_for_order(self, coupon_id: str, order_id: str) -> bool: ...

    def record_usage(self, coupon_id: str, user_id: str, order_id: str) -> None: ...

    def increment_usage_count(self, coupon_id: str) -> None: ...

    def insert(self, coupon: Coupon) -> Coupon:
        """Raises ConflictError when the code already exists."""
        ...

    def list(self) -> List[Coupon]: ...


class OrderStore(Protocol):
    def insert(self, order: Order) -> Order: ...

    def get(self, order_id: str) -> Order:
        """Raises OrderNotFoundError."""
        ...

    def find_by_number(self, order_number: str) -> Order:
        """Raises OrderNotFoundError."""
        ...

    def save(self, order: Order) -> Order:
        """Persist status, payment status and tracking number changes."""
        ...

    def list_for_user(self, user_id: str) -> List[Order]: ...

    def list_all(
        self, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[Order]: ...

    def count(self, status: Optional[OrderStatus] = None) -> int: ...


class UserStore(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def insert(self, user: User) -> User:
        """Raises ConflictError when the email is already registered."""
        ...


class Session(Protocol):
    products: ProductStore
    carts: CartStore
    addresses: AddressStore
    coupons: CouponStore
    orders: OrderStore
    users: UserStore


class Store(Protocol):
    def transaction(self) -> ContextManager[Session]: ...

    def run_in_transaction(self, work: Callable[[Session], T]) -> T:
        """Run `work` in one transaction, re-running it if the store aborts on a
        transient conflict. `work` must only write through the session it gets.
        """
        ...

    def describe(self) -> dict:
        """Connection summary for the health endpoint."""
        ...
