"""
MongoDB access: connection, document helpers and the transactional store.

Multi-document transactions need a replica set (a single-node one is enough
for development). Every transaction runs under `pymongo.timeout` so a request
can never hold locks indefinitely under contention. Order writes go through
`MongoStore.run_in_transaction`, which retries on transient write conflicts.
"""

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, TypeVar, Union

import pymongo
from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

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

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")


def connect(database_url: str) -> MongoClient:
    return MongoClient(database_url, tz_aware=True)


def oid(id_str: str) -> Optional[ObjectId]:
    return ObjectId(id_str) if ObjectId.is_valid(id_str) else None


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def to_document(model: BaseModel) -> Dict[str, Any]:
    return _plain(model.model_dump(exclude={"id"}))


def from_document(model: Type[M], doc: Dict[str, Any]) -> M:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return model.model_validate(data)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    doc = to_document(data) if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: int = 0,
    skip: int = 0,
    sort: Optional[list] = None,
    session=None,
) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {}, session=session)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["coupon"].create_index("code", unique=True)
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["coupon_usage"].create_index([("coupon_id", ASCENDING), ("user_id", ASCENDING)])
    db["cart"].create_index("user_id", unique=True)
    db["address"].create_index("user_id")


class _Collection:
    def __init__(self, db: Database, session):
        self.db = db
        self.session = session


class MongoProductStore(_Collection):
    def get_stock_and_price(self, product_id: str) -> StockAndPrice:
        _id = oid(product_id)
        doc = self.db["product"].find_one({"_id": _id}, session=self.session) if _id else None
        if not doc or not doc.get("is_active", True):
            raise ProductNotFoundError(product_id)
        return StockAndPrice(
            product_id=product_id, name=doc["name"], stock=doc["stock"], price=doc["price"]
        )

    def decrement_stock(self, product_id: str, quantity: int) -> None:
        result = self.db["product"].update_one(
            {"_id": oid(product_id), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
            session=self.session,
        )
        if result.modified_count == 0:
            current = self.get_stock_and_price(product_id)
            raise InsufficientStockError(product_id, current.name, current.stock)

    def increment_stock(self, product_id: str, quantity: int) -> None:
        result = self.db["product"].update_one(
            {"_id": oid(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
            session=self.session,
        )
        if result.matched_count == 0:
            raise ProductNotFoundError(product_id)

    def insert(self, product: Product) -> Product:
        pid = create_document(self.db, "product", product, session=self.session)
        return product.model_copy(update={"id": pid})

    def list(self, category: Optional[str] = None, limit: int = 100) -> List[Product]:
        filt: Dict[str, Any] = {"is_active": True}
        if category:
            filt["category"] = category
        docs = get_documents(self.db, "product", filt, limit=limit, session=self.session)
        return [from_document(Product, d) for d in docs]


class MongoCartStore(_Collection):
    def list_lines(self, user_id: str) -> List[CartItem]:
        cart = self.db["cart"].find_one({"user_id": user_id}, session=self.session)
        return [CartItem.model_validate(it) for it in (cart or {}).get("items", [])]

    def add_line(self, user_id: str, item: CartItem) -> List[CartItem]:
        items = [it.model_dump() for it in self.list_lines(user_id)]
        for it in items:
            if (it["product_id"], it["size"], it["color"]) == (item.product_id, item.size, item.color):
                it["quantity"] += item.quantity
                break
        else:
            items.append(item.model_dump())
        self.db["cart"].update_one(
            {"user_id": user_id},
            {"$set": {"items": items, "updated_at": utcnow()}},
            upsert=True,
            session=self.session,
        )
        return [CartItem.model_validate(it) for it in items]

    def clear(self, user_id: str) -> None:
        self.db["cart"].update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "updated_at": utcnow()}},
            session=self.session,
        )


class MongoAddressStore(_Collection):
    def find_owned(self, address_id: str, user_id: str) -> Address:
        _id = oid(address_id)
        doc = (
            self.db["address"].find_one({"_id": _id, "user_id": user_id}, session=self.session)
            if _id else None
        )
        if not doc:
            raise AddressNotFoundError(address_id)
        return from_document(Address, doc)

    def insert(self, address: Address) -> Address:
        count = self.db["address"].count_documents({"user_id": address.user_id}, session=self.session)
        is_default = address.is_default or count == 0
        if is_default:
            self.db["address"].update_many(
                {"user_id": address.user_id}, {"$set": {"is_default": False}}, session=self.session
            )
        address = address.model_copy(update={"is_default": is_default})
        aid = create_document(self.db, "address", address, session=self.session)
        return address.model_copy(update={"id": aid})

    def list_for_user(self, user_id: str) -> List[Address]:
        docs = get_documents(self.db, "address", {"user_id": user_id}, session=self.session)
        return [from_document(Address, d) for d in docs]


class MongoCouponStore(_Collection):
    def find_by_code(self, code: str) -> Coupon:
        wanted = code.strip().upper()
        doc = self.db["coupon"].find_one({"code": wanted}, session=self.session)
        if not doc:
            raise CouponNotFoundError(wanted)
        return from_document(Coupon, doc)

    def count_usage_by_user(self, coupon_id: str, user_id: str) -> int:
        return self.db["coupon_usage"].count_documents(
            {"coupon_id": coupon_id, "user_id": user_id}, session=self.session
        )

    def has_usage_for_order(self, coupon_id: str, order_id: str) -> bool:
        doc = self.db["coupon_usage"].find_one(
            {"coupon_id": coupon_id, "order_id": order_id}, {"_id": 1}, session=self.session
        )
        return doc is not None

    def record_usage(self, coupon_id: str, user_id: str, order_id: str) -> None:
        usage = CouponUsage(coupon_id=coupon_id, user_id=user_id, order_id=order_id)
        create_document(self.db, "coupon_usage", usage, session=self.session)

    def increment_usage_count(self, coupon_id: str) -> None:
        self.db["coupon"].update_one(
            {"_id": oid(coupon_id)}, {"$inc": {"usage_count": 1}}, session=self.session
        )

    def insert(self, coupon: Coupon) -> Coupon:
        if self.db["coupon"].find_one({"code": coupon.code}, session=self.session):
            raise ConflictError("Coupon code already exists")
        try:
            cid = create_document(self.db, "coupon", coupon, session=self.session)
        except DuplicateKeyError as exc:
            raise ConflictError("Coupon code already exists") from exc
        return coupon.model_copy(update={"id": cid})

    def list(self) -> List[Coupon]:
        docs = get_documents(self.db, "coupon", sort=[("created_at", DESCENDING)], session=self.session)
        return [from_document(Coupon, d) for d in docs]


class MongoOrderStore(_Collection):
    def insert(self, order: Order) -> Order:
        order_id = create_document(self.db, "order", order, session=self.session)
        return order.model_copy(update={"id": order_id})

    def _find_one(self, filt: dict, ref: str) -> Order:
        doc = self.db["order"].find_one(filt, session=self.session)
        if not doc:
            raise OrderNotFoundError(ref)
        return from_document(Order, doc)

    def get(self, order_id: str) -> Order:
        _id = oid(order_id)
        if _id is None:
            raise OrderNotFoundError(order_id)
        return self._find_one({"_id": _id}, order_id)

    def find_by_number(self, order_number: str) -> Order:
        return self._find_one({"order_number": order_number}, order_number)

    def save(self, order: Order) -> Order:
        result = self.db["order"].update_one(
            {"_id": oid(order.id)},
            {"$set": {
                "status": order.status.value,
                "payment_status": order.payment_status.value,
                "tracking_number": order.tracking_number,
                "updated_at": utcnow(),
            }},
            session=self.session,
        )
        if result.matched_count == 0:
            raise OrderNotFoundError(order.order_number)
        return self.get(order.id)

    def list_for_user(self, user_id: str) -> List[Order]:
        docs = get_documents(
            self.db, "order", {"user_id": user_id}, sort=[("created_at", DESCENDING)], session=self.session
        )
        return [from_document(Order, d) for d in docs]

    def list_all(
        self, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 20
    ) -> List[Order]:
        filt = {"status": status.value} if status else {}
        docs = get_documents(
            self.db, "order", filt, limit=limit, skip=skip,
            sort=[("created_at", DESCENDING)], session=self.session,
        )
        return [from_document(Order, d) for d in docs]

    def count(self, status: Optional[OrderStatus] = None) -> int:
        filt = {"status": status.value} if status else {}
        return self.db["order"].count_documents(filt, session=self.session)


class MongoUserStore(_Collection):
    def find_by_email(self, email: str) -> Optional[User]:
        doc = self.db["user"].find_one({"email": email.lower()}, session=self.session)
        return from_document(User, doc) if doc else None

    def insert(self, user: User) -> User:
        user = user.model_copy(update={"email": user.email.lower()})
        if self.find_by_email(user.email) is not None:
            raise ConflictError("Email already registered")
        try:
            uid = create_document(self.db, "user", user, session=self.session)
        except DuplicateKeyError as exc:
            raise ConflictError("Email already registered") from exc
        return user.model_copy(update={"id": uid})


class MongoSession:
    def __init__(self, db: Database, session):
        self.products = MongoProductStore(db, session)
        self.carts = MongoCartStore(db, session)
        self.addresses = MongoAddressStore(db, session)
        self.coupons = MongoCouponStore(db, session)
        self.orders = MongoOrderStore(db, session)
        self.users = MongoUserStore(db, session)


class MongoStore:
    def __init__(self, client: MongoClient, database_name: str, timeout_seconds: float = 10.0):
        self.client = client
        self.db = client[database_name]
        self.timeout_seconds = timeout_seconds

    @contextmanager
    def transaction(self) -> Iterator[MongoSession]:
        """Single-attempt transaction for reads and uncontended writes."""
        try:
            with pymongo.timeout(self.timeout_seconds):
                with self.client.start_session() as session:
                    with session.start_transaction():
                        yield MongoSession(self.db, session)
        except PyMongoError as exc:
            logger.error("Store transaction aborted: %s", exc)
            raise TransientStoreError() from exc

    def run_in_transaction(self, work: Callable[[MongoSession], T]) -> T:
        """Run `work` in a transaction, re-running it on transient conflicts.

        `session.with_transaction` retries the whole callback when the server
        aborts with a TransientTransactionError (e.g. a WriteConflict between
        two checkouts taking the same stock), so the retried attempt sees the
        committed stock and fails with InsufficientStockError instead.
        Business errors raised by `work` abort the transaction and propagate.
        """
        try:
            with pymongo.timeout(self.timeout_seconds):
                with self.client.start_session() as session:
                    return session.with_transaction(lambda s: work(MongoSession(self.db, s)))
        except PyMongoError as exc:
            logger.error("Store transaction aborted after retries: %s", exc)
            raise TransientStoreError() from exc

    def describe(self) -> dict:
        response = {"backend": "mongodb", "database_name": self.db.name, "collections": []}
        try:
            response["collections"] = self.db.list_collection_names()[:10]
            response["connection_status"] = "Connected"
        except PyMongoError as e:
            response["connection_status"] = f"Error: {str(e)[:80]}"
        return response
