from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_DATABASE_URL = "sqlite:///./storefront.db"
DEFAULT_XENDIT_API_URL = "https://api.xendit.co"
DEFAULT_PUBLIC_BASE_URL = "http://localhost:8000"
WEBHOOK_PATH = "/api/xendit-webhook"


def _opt(env: Mapping[str, str], key: str) -> Optional[str]:
    # empty strings count as "not configured"
    val = env.get(key)
    if val is None:
        return None
    val = val.strip()
    return val or None


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    payment_backend: str = "sql"  # 'sql' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 512

    payment_provider: str = "xendit"  # 'xendit' | 'mock'
    xendit_api_url: str = DEFAULT_XENDIT_API_URL
    xendit_secret_key: Optional[str] = field(default=None, repr=False)
    xendit_callback_token: Optional[str] = field(default=None, repr=False)
    provider_timeout: float = 10.0

    shipping_cost: int = 25000
    invoice_duration: int = 3600  # seconds
    currency: str = "IDR"

    public_base_url: str = DEFAULT_PUBLIC_BASE_URL
    webhook_url: Optional[str] = None

    log_level: str = "INFO"

    @property
    def success_redirect_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/success"

    @property
    def failure_redirect_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/failure"

    @property
    def mock_webhook_url(self) -> str:
        if self.webhook_url:
            return self.webhook_url
        return f"{self.public_base_url.rstrip('/')}{WEBHOOK_PATH}"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        gate = _opt(env, "DB_GATE_LIMIT")
        return cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            db_pool_size=int(env.get("DB_POOL_SIZE", "10")),
            db_max_overflow=int(env.get("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(env.get("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=int(gate) if gate else None,
            payment_backend=env.get("PAYMENT_BACKEND", "sql").lower(),
            redis_url=env.get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(env.get("REDIS_MAX_CONN", "512")),
            payment_provider=env.get("PAYMENT_PROVIDER", "xendit").lower(),
            xendit_api_url=env.get("XENDIT_API_URL", DEFAULT_XENDIT_API_URL),
            xendit_secret_key=_opt(env, "XENDIT_SECRET_KEY"),
            xendit_callback_token=_opt(env, "XENDIT_CALLBACK_TOKEN"),
            provider_timeout=float(env.get("PROVIDER_TIMEOUT", "10")),
            shipping_cost=int(env.get("SHIPPING_COST", "25000")),
            invoice_duration=int(env.get("INVOICE_DURATION", "3600")),
            currency=env.get("CURRENCY", "IDR").upper(),
            public_base_url=env.get("PUBLIC_BASE_URL",
                                    DEFAULT_PUBLIC_BASE_URL),
            webhook_url=_opt(env, "WEBHOOK_URL"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
