"""
Runtime settings read from the environment.

A local `.env` file is loaded first so development setups don't need to export
anything. All money amounts are integer minor units (paise).
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class RateLimitPolicy:
    max: int
    window_ms: int
    message: str = "Too many requests, please try again later."


DEFAULT_RATE_LIMITS: Dict[str, RateLimitPolicy] = {
    "general": RateLimitPolicy(
        100, 15 * 60 * 1000, "Too many requests from this IP, please try again after 15 minutes"
    ),
    "auth": RateLimitPolicy(100, 15 * 60 * 1000, "Too many login attempts, please try again later"),
    "api": RateLimitPolicy(60, 60 * 1000, "API rate limit exceeded, please slow down"),
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _rate_limits_from_env() -> Dict[str, RateLimitPolicy]:
    policies = {}
    for name, default in DEFAULT_RATE_LIMITS.items():
        prefix = f"RATE_LIMIT_{name.upper()}"
        policies[name] = RateLimitPolicy(
            max=_env_int(f"{prefix}_MAX", default.max),
            window_ms=_env_int(f"{prefix}_WINDOW_MS", default.window_ms),
            message=default.message,
        )
    return policies


@dataclass
class Settings:
    database_url: Optional[str] = None
    database_name: str = "storefront"
    jwt_secret: str = "fallback-secret-change-in-production"
    jwt_expires_minutes: int = 7 * 24 * 60
    free_shipping_threshold: int = 500000
    shipping_flat_fee: int = 50000
    order_number_prefix: str = "HOL"
    store_timeout_seconds: float = 10.0
    trust_proxy: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    rate_limit_enabled: bool = True
    rate_limit_store: str = "memory"
    rate_limits: Dict[str, RateLimitPolicy] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )
    notification_max_attempts: int = 3

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME", "storefront"),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            jwt_expires_minutes=_env_int("JWT_EXPIRES_MINUTES", cls.jwt_expires_minutes),
            free_shipping_threshold=_env_int("FREE_SHIPPING_THRESHOLD", cls.free_shipping_threshold),
            shipping_flat_fee=_env_int("SHIPPING_FLAT_FEE", cls.shipping_flat_fee),
            order_number_prefix=os.getenv("ORDER_NUMBER_PREFIX", cls.order_number_prefix),
            store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", cls.store_timeout_seconds)),
            trust_proxy=_env_bool("TRUST_PROXY", False),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            rate_limit_store=os.getenv("RATE_LIMIT_STORE", "memory").lower(),
            rate_limits=_rate_limits_from_env(),
            notification_max_attempts=_env_int("NOTIFICATION_MAX_ATTEMPTS", 3),
        )
