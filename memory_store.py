"""
In-process implementation of the store interfaces.

Used when no DATABASE_URL is configured and by the test suite. Transactions are
serialized on one re-entrant lock and roll back by restoring a snapshot taken
when the transaction began, so a failure part-way through leaves no trace.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from bson import ObjectId

from errors import (
    AddressNotFoundError,
    ConflictError,
    CouponNotFoundError,
    InsufficientStockError,
    OrderNotFoundError,
    ProductNotFoundError,
    TransientStoreError,
)
from schemas import (
    Address,
    CartItem,
    Coupon,
    CouponUsage,
    Order,
    OrderStatus,
    Product,
    StockAndPrice,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

TABLES = ("user", "product", "cart", "address", "order", "coupon", "coupon_usage")

Tables = Dict[str, Dict[str, Dict[str, Any]]]
T = TypeVar("T")


def new_id() -> str:
    return str(ObjectId())


class MemoryProductStore:
    def __init__(self, tables: Tables):
        self._tables = tables

    def _doc(self, product_id: str) -> Dict[str, Any]:
        doc = self._tables["product"].get(product_id)
        if doc is None:
            raise ProductNotFoundError(product_id)
        return doc

    def get_stock_and_price(self, product_id: str) -> StockAndPrice:
        doc = self._doc(product_id)
        if not doc.get("is_active", True):
            raise ProductNotFoundError(product_id)
        return StockAndPrice(
            product_id=product_id, name=doc["name"], stock=doc["stock"], price=doc["price"]
        )

    def decrement_stock(self, product_id: str, quantity: int) -> None:
        doc = self._doc(product_id)
        if doc["stock"] < quantity:
            raise InsufficientStockError(product_id, doc["name"], doc["stock"])
        doc["stock"] -= quantity

    def increment_stock(self, product_id: str, quantity: int) -> None:
        self._doc(product_id)["stock"] += quantity

    def insert(self, product: Product) -> Product:
        doc = product.model_dump()
        doc["id"] = new_id()
        self._tables["product"][doc["id"]] = doc
        return Product.model_validate(doc)

    def list(self, category: Optional[str] = None, limit: int = 100) -> List[Product]:
        docs = [
            d for d in self._tables["product"].values()
            if d.get("is_active", True) and (category is None or d["category"] == category)
        ]
        return [Product.model_validate(d) for d in docs[:limit]]


class MemoryCartStore:
    def __init__(self, tables: Tables):
        self._tables = tables

    def list_lines(self, user_id: str) -> List[CartItem]:
        return [CartItem.model_validate(i) for i in self._tables["cart"].get(user_id, [])]

    def add_line(self, user_id: str, item: CartItem) -> List[CartItem]:
        items = self._tables["cart"].setdefault(user_id, [])
        for it in items:
            if (it["product_id"], it["size"], it["color"]) == (item.product_id, item.size, item.color):
                it["quantity"] += item.quantity
                break
        else:
            items.append(item.model_dump())
        return self.list_lines(user_id)

    def clear(self, user_id: str) -> None:
        self._tables["cart"].pop(user_id, None)


class MemoryAddressStore:
    def __init__(self, tables: Tables):
        self._tables = tables

    def find_owned(self, address_id: str, user_id: str) -> Address:
        doc = self._tables["address"].get(address_id)
        if doc is None or doc["user_id"] != user_id:
            raise AddressNotFoundError(address_id)
        return Address.model_validate(doc)

    def insert(self, address: Address) -> Address:
        existing = [d for d in self._tables["address"].values() if d["user_id"] == address.user_id]
        doc = address.model_dump()
        doc["id"] = new_id()
        doc["is_default"] = address.is_default or not existing
        if doc["is_default"]:
            for d in existing:
                d["is_default"] = False
        self._tables["address"][doc["id"]] = doc
        return Address.model_validate(doc)

    def list_for_user(self, user_id: str) -> List[Address]:
        return [
            Address.model_validate(d)
            for d in self._tables["address"].values()
            if d["user_id"] == user_id
        ]


class MemoryCouponStore:
    def __init__(self, tables: Tables):
        self._tables = tables

    def find_by_code(self, code: str) -> Coupon:
        wanted = code.strip().upper()
        for doc in self._tables["coupon"].values():
            if doc["code"] == wanted:
                return Coupon.model_validate(doc)
        raise CouponNotFoundError(wanted)

    def count_usage_by_user(self, coupon_id: str, user_id: str) -> int:
        return sum(
            1 for u in self._tables["coupon_usage"].values()
            if u["coupon_id"] == coupon_id and u["user_id"] == user_id
        )

    def has_usage_for_order(self, coupon_id: str, order_id: str) -> bool:
        return any(
            u["coupon_id"] == coupon_id and u["order_id"] == order_id
            for u in self._tables["coupon_usage"].values()
        )

    def record_usage(self, coupon_id: str, user_id: str, order_id: str) -> None:
        usage = CouponUsage(id=new_id(), coupon_id=coupon_id, user_id=user_id, order_id=order_id)
        self._tables["coupon_usage"][usage.id] = usage.model_dump()

    def increment_usage_count(self, coupon_id: str) -> None:
        self._tables["coupon"][coupon_id]["usage_count"] += 1

    def insert(self, coupon: Coupon) -> Coupon:
        if any(d["code"] == coupon.code for d in self._tables["coupon"].values()):
            raise ConflictError("Coupon code already exists")
        doc = coupon.model_dump()
        doc["id"] = new_id()
        self._tables["coupon"][doc["id"]] = doc
        return Coupon.model_validate(doc)

    def list(self) -> List[Coupon]:
        docs = sorted(self._tables["coupon"].values(), key=lambda d: d["created_at"], reverse=True)
        return [Coupon.model_validate(d) for d in docs]


class MemoryOrderStore:
    def __init__(self, tables: Tables):
        self._tables = tables

    def insert(self, order: Order) -> Order:
        doc = order.model_dump()
        doc["id"] = new_id()
        self._tables["order"][doc["id"]] = doc
        return Order.model_validate(doc)

    def get(self, order_id: str) -> Order:
        doc = self._tables["order"].get(order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order.model_validate(doc)

    def find_by_number(self, order_number: str) -> Order:
        for doc in self._tables["order"].values():
            if doc["order_number"] == order_number:
                return Order.model_validate(doc)
        raise OrderNotFoundError(order_number)

    def save(self, order: Order) -> Order:
        doc = self._tables["order"].get(order.id)
        if doc is None:
            raise OrderNotFoundError(order.order_number)
        doc.update(
            status=order.status,
            payment_status=order.payment_status,
            tracking_number=order.tracking_number,
            updated_at=utcnow(),
        )
        return Order.model_validate(doc)

    def _sorted(self, docs) -> List[Order]:
        ordered = sorted(docs, key=lambda d: d["created_at"], reverse=True)
        return [Order.model_validate(d) for d in ordered]

    def list_for_user(self, user_id: str) -> List[Order]:
        return self._sorted(d for d in self._tables["order"].values() if d["user_id"] == user_id)

    def list_all(
        self, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[Order]:
        orders = self._sorted(
            d for d in self._tables["order"].values() if status is None or d["status"] == status
        )
        return orders[skip:skip + limit]

    def count(self, status: Optional[OrderStatus] = None) -> int:
        return sum(
            1 for d in self._tables["order"].values() if status is None or d["status"] == status
        )


class MemoryUserStore:
    def __init__(self, tables: Tables):
        self._tables = tables

    def find_by_email(self, email: str) -> Optional[User]:
        wanted = email.lower()
        for doc in self._tables["user"].values():
            if doc["email"].lower() == wanted:
                return User.model_validate(doc)
        return None

    def insert(self, user: User) -> User:
        if self.find_by_email(user.email) is not None:
            raise ConflictError("Email already registered")
        doc = user.model_dump()
        doc["id"] = new_id()
        self._tables["user"][doc["id"]] = doc
        return User.model_validate(doc)


class MemorySession:
    def __init__(self, tables: Tables):
        self.products = MemoryProductStore(tables)
        self.carts = MemoryCartStore(tables)
        self.addresses = MemoryAddressStore(tables)
        self.coupons = MemoryCouponStore(tables)
        self.orders = MemoryOrderStore(tables)
        self.users = MemoryUserStore(tables)


class MemoryStore:
    """Process-local store; state is lost on restart."""

    def __init__(self, lock_timeout: float = 10.0):
        self._lock = threading.RLock()
        self._lock_timeout = lock_timeout
        self._tables: Tables = {name: {} for name in TABLES}

    @contextmanager
    def transaction(self) -> Iterator[MemorySession]:
        if not self._lock.acquire(timeout=self._lock_timeout):
            logger.warning("Timed out after %.1fs waiting for the store lock", self._lock_timeout)
            raise TransientStoreError()
        try:
            snapshot = copy.deepcopy(self._tables)
            try:
                yield MemorySession(self._tables)
            except BaseException:
                for name, rows in snapshot.items():
                    self._tables[name] = rows
                raise
        finally:
            self._lock.release()

    def run_in_transaction(self, work: Callable[[MemorySession], T]) -> T:
        # Transactions are serialized, so there is never a conflict to retry.
        with self.transaction() as tx:
            return work(tx)

    def describe(self) -> dict:
        return {
            "backend": "memory",
            "collections": {name: len(rows) for name, rows in self._tables.items()},
        }
