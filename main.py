import logging
import math
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, RootModel

from auth import (
    Identity,
    create_token,
    current_user,
    hash_password,
    optional_user,
    require_admin,
    verify_password,
)
from config import Settings
from coupons import CouponSummary, apply_coupon, validate_coupon
from database import MongoStore, connect, ensure_indexes
from errors import (
    ConflictError,
    CouponError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStateTransitionError,
    NotFoundError,
    RateLimitedError,
    StorefrontError,
    TransientStoreError,
    UnauthenticatedError,
    UnauthorizedError,
)
from memory_store import MemoryStore
from notifications import LoggingNotifier, Notifier, Outbox
from orders import OrderService
from ratelimit import (
    CounterStore,
    MemoryCounterStore,
    MongoCounterStore,
    RateLimiter,
    RateLimitMiddleware,
    client_ip_key,
    rate_limited_response,
    start_sweepers,
)
from schemas import (
    Address,
    CartItem,
    Coupon,
    DiscountType,
    Order,
    OrderCommand,
    OrderStatus,
    PaymentMethod,
    Product,
    Role,
    User,
    utcnow,
)
from stores import Store

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    UnauthenticatedError: 401,
    UnauthorizedError: 403,
    NotFoundError: 404,
    ConflictError: 400,
    EmptyCartError: 400,
    InsufficientStockError: 400,
    InvalidStateTransitionError: 400,
    CouponError: 400,
    RateLimitedError: 429,
    TransientStoreError: 503,
}

# Routes guarded by the "api" limiter; everything also passes "general".
API_PREFIXES = ("/api/products", "/api/cart", "/api/addresses", "/api/orders", "/api/coupons")


def status_code_for(exc: StorefrontError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 400


def build_store(settings: Settings) -> Store:
    if settings.database_url:
        client = connect(settings.database_url)
        return MongoStore(client, settings.database_name, settings.store_timeout_seconds)
    logger.warning("DATABASE_URL not set; using the in-process store (data is lost on restart)")
    return MemoryStore(lock_timeout=settings.store_timeout_seconds)


def build_limiters(settings: Settings, store: Store) -> List[tuple]:
    def counters(name: str) -> CounterStore:
        if settings.rate_limit_store == "mongo" and isinstance(store, MongoStore):
            return MongoCounterStore(store.db["rate_limit"], name)
        return MemoryCounterStore()

    limiters = {
        name: RateLimiter(name, policy.max, policy.window_ms, policy.message, store=counters(name))
        for name, policy in settings.rate_limits.items()
    }
    routes = [("/", limiters["general"]), ("/api/auth", limiters["auth"])]
    routes += [(prefix, limiters["api"]) for prefix in API_PREFIXES]
    return routes


# Request / response models

class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AuthResponse(BaseModel):
    user_id: str
    name: str
    email: EmailStr
    role: Role
    token: str


class CreateProductRequest(Product):
    pass


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=10)
    size: Optional[str] = None
    color: Optional[str] = None


class CreateAddressRequest(BaseModel):
    full_name: str
    phone: str
    address_line1: str = Field(..., min_length=5)
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "India"
    is_default: bool = False


class CreateOrderRequest(BaseModel):
    address_id: str
    payment_method: PaymentMethod = PaymentMethod.COD
    notes: Optional[str] = Field(None, max_length=500)
    coupon_code: Optional[str] = Field(None, max_length=50)


class StatusUpdateRequest(RootModel[OrderCommand]):
    pass


class ValidateCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    subtotal: Optional[int] = Field(None, ge=0)


class ValidateCouponResponse(BaseModel):
    coupon: CouponSummary
    discount_amount: int
    message: str = "Coupon applied successfully"


class ApplyCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    order_id: str


class CreateCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = None
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: int = Field(..., gt=0)
    min_order_amount: Optional[int] = Field(None, ge=0)
    max_discount: Optional[int] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    per_user_limit: int = Field(1, ge=1)
    valid_from: Optional[datetime] = None
    valid_to: datetime


# Dependencies

def get_store(request: Request) -> Store:
    return request.app.state.store


def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_outbox(request: Request) -> Outbox:
    return request.app.state.outbox


router = APIRouter(prefix="/api")


# Auth endpoints
@router.post("/auth/signup", response_model=AuthResponse)
def signup(payload: SignupRequest, request: Request, store: Store = Depends(get_store)):
    settings = request.app.state.settings
    with store.transaction() as tx:
        user = tx.users.insert(User(
            name=payload.name,
            email=payload.email,
            password_hash=hash_password(payload.password),
            is_active=True,
        ))
    token = create_token(user, settings.jwt_secret, settings.jwt_expires_minutes)
    return AuthResponse(user_id=user.id, name=user.name, email=user.email, role=user.role, token=token)


@router.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, request: Request, store: Store = Depends(get_store)):
    settings = request.app.state.settings
    with store.transaction() as tx:
        user = tx.users.find_by_email(payload.email)
    if not user or not user.is_active or not verify_password(payload.password, user.password_hash):
        raise UnauthenticatedError("Invalid credentials")
    token = create_token(user, settings.jwt_secret, settings.jwt_expires_minutes)
    return AuthResponse(user_id=user.id, name=user.name, email=user.email, role=user.role, token=token)


# Products
@router.get("/products", response_model=List[Product])
def list_products(
    category: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    store: Store = Depends(get_store),
):
    with store.transaction() as tx:
        return tx.products.list(category=category, limit=limit)


@router.post("/products", response_model=Product, status_code=201)
def create_product(
    payload: CreateProductRequest,
    store: Store = Depends(get_store),
    admin: Identity = Depends(require_admin),
):
    with store.transaction() as tx:
        return tx.products.insert(Product(**payload.model_dump(exclude={"id"})))


# Cart
@router.get("/cart", response_model=List[CartItem])
def get_cart(user: Identity = Depends(current_user), store: Store = Depends(get_store)):
    with store.transaction() as tx:
        return tx.carts.list_lines(user.user_id)


@router.post("/cart/add", response_model=List[CartItem])
def add_to_cart(
    payload: AddToCartRequest,
    user: Identity = Depends(current_user),
    store: Store = Depends(get_store),
):
    with store.transaction() as tx:
        tx.products.get_stock_and_price(payload.product_id)
        return tx.carts.add_line(user.user_id, CartItem(**payload.model_dump()))


@router.delete("/cart")
def clear_cart(user: Identity = Depends(current_user), store: Store = Depends(get_store)):
    with store.transaction() as tx:
        tx.carts.clear(user.user_id)
    return {"message": "Cart cleared"}


# Addresses
@router.get("/addresses", response_model=List[Address])
def list_addresses(user: Identity = Depends(current_user), store: Store = Depends(get_store)):
    with store.transaction() as tx:
        return tx.addresses.list_for_user(user.user_id)


@router.post("/addresses", response_model=Address, status_code=201)
def create_address(
    payload: CreateAddressRequest,
    user: Identity = Depends(current_user),
    store: Store = Depends(get_store),
):
    with store.transaction() as tx:
        return tx.addresses.insert(Address(user_id=user.user_id, **payload.model_dump()))


# Orders
@router.post("/orders", response_model=Order, status_code=201)
def create_order(
    payload: CreateOrderRequest,
    background_tasks: BackgroundTasks,
    user: Identity = Depends(current_user),
    orders: OrderService = Depends(get_orders),
    outbox: Outbox = Depends(get_outbox),
):
    order = orders.place_order(
        user.user_id,
        payload.address_id,
        payment_method=payload.payment_method,
        coupon_code=payload.coupon_code,
        notes=payload.notes,
    )
    background_tasks.add_task(outbox.flush)
    return order


@router.get("/orders", response_model=List[Order])
def list_my_orders(user: Identity = Depends(current_user), orders: OrderService = Depends(get_orders)):
    return orders.list_orders(user.user_id)


@router.get("/orders/admin/all")
def list_all_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: Identity = Depends(require_admin),
    orders: OrderService = Depends(get_orders),
):
    items, total = orders.list_all(status, page=page, limit=limit)
    return {
        "orders": [o.model_dump(mode="json") for o in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/orders/{order_number}", response_model=Order)
def get_order(
    order_number: str,
    user: Identity = Depends(current_user),
    orders: OrderService = Depends(get_orders),
):
    return orders.get_order(order_number, user.user_id, is_admin=user.is_admin)


@router.post("/orders/{order_number}/cancel")
def cancel_order(
    order_number: str,
    user: Identity = Depends(current_user),
    orders: OrderService = Depends(get_orders),
):
    orders.cancel_order(order_number, user.user_id)
    return {"message": "Order cancelled"}


@router.patch("/orders/{order_number}/status", response_model=Order)
def update_order_status(
    order_number: str,
    payload: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    admin: Identity = Depends(require_admin),
    orders: OrderService = Depends(get_orders),
    outbox: Outbox = Depends(get_outbox),
):
    order = orders.apply_command(order_number, payload.root)
    background_tasks.add_task(outbox.flush)
    return order


# Coupons
@router.post("/coupons/validate", response_model=ValidateCouponResponse)
def validate_coupon_code(
    payload: ValidateCouponRequest,
    user: Optional[Identity] = Depends(optional_user),
    store: Store = Depends(get_store),
):
    with store.transaction() as tx:
        quote = validate_coupon(tx, payload.code, payload.subtotal, user.user_id if user else None)
    return ValidateCouponResponse(coupon=quote.coupon, discount_amount=quote.discount)


@router.post("/coupons/apply")
def apply_coupon_code(
    payload: ApplyCouponRequest,
    user: Identity = Depends(current_user),
    store: Store = Depends(get_store),
):
    store.run_in_transaction(lambda tx: apply_coupon(tx, payload.code, user.user_id, payload.order_id))
    return {"message": "Coupon applied to order"}


@router.post("/coupons", response_model=Coupon, status_code=201)
def create_coupon(
    payload: CreateCouponRequest,
    admin: Identity = Depends(require_admin),
    store: Store = Depends(get_store),
):
    data = payload.model_dump(exclude_none=True)
    with store.transaction() as tx:
        return tx.coupons.insert(Coupon(**data))


@router.get("/coupons", response_model=List[Coupon])
def list_coupons(admin: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    with store.transaction() as tx:
        return tx.coupons.list()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = store if store is not None else build_store(settings)
    outbox = Outbox(notifier or LoggingNotifier(), max_attempts=settings.notification_max_attempts)
    orders = OrderService(
        store,
        outbox,
        free_shipping_threshold=settings.free_shipping_threshold,
        shipping_flat_fee=settings.shipping_flat_fee,
        order_number_prefix=settings.order_number_prefix,
    )
    limiter_routes = build_limiters(settings, store) if settings.rate_limit_enabled else []

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(store, MongoStore):
            ensure_indexes(store.db)
        unique = list({id(limiter): limiter for _, limiter in limiter_routes}.values())
        sweepers = start_sweepers(unique)
        yield
        for task in sweepers:
            task.cancel()
        outbox.flush()

    app = FastAPI(title="E‑Commerce Clothing API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.outbox = outbox
    app.state.orders = orders
    app.state.limiters = limiter_routes

    if limiter_routes:
        app.add_middleware(
            RateLimitMiddleware,
            limiters=limiter_routes,
            key_func=client_ip_key(settings.trust_proxy),
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
        """Map StorefrontError subclasses to appropriate HTTP responses."""
        if isinstance(exc, RateLimitedError):
            return rate_limited_response(exc)
        if isinstance(exc, TransientStoreError):
            logger.error("Transient store failure on %s %s: %r", request.method, request.url.path, exc.__cause__)
        content = {"detail": str(exc), "error_type": exc.kind}
        if isinstance(exc, InsufficientStockError):
            content.update(product_id=exc.product_id, available=exc.available)
        return JSONResponse(status_code=status_code_for(exc), content=content)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error_type": "InternalError"},
        )

    @app.get("/")
    def read_root():
        return {"message": "E‑Commerce API running"}

    @app.get("/health")
    def health():
        return {"status": "ok", "timestamp": utcnow().isoformat()}

    @app.get("/test")
    def test_database():
        response = {"backend": "✅ Running"}
        response.update(store.describe())
        return response

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
