"""
設定 — 環境変数から読み込む

各サービスと同じく os.environ を直接参照する。
テストでは Settings を直接組み立てて渡す。
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./bookstore.db"
    redis_url: str = "redis://localhost:6379"
    gateway_url: str = "http://localhost:8090"
    gateway_api_key: str = ""
    gateway_timeout: float = 10.0
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.5
    currency: str = "USD"
    reserve_max_attempts: int = 20
    abandon_after_seconds: int = 900
    reconcile_interval_seconds: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            redis_url=env.get("REDIS_URL", cls.redis_url),
            gateway_url=env.get("PAYMENT_GATEWAY_URL", cls.gateway_url),
            gateway_api_key=env.get("PAYMENT_GATEWAY_API_KEY", cls.gateway_api_key),
            gateway_timeout=float(
                env.get("PAYMENT_GATEWAY_TIMEOUT", cls.gateway_timeout)
            ),
            gateway_max_attempts=int(
                env.get("GATEWAY_MAX_ATTEMPTS", cls.gateway_max_attempts)
            ),
            gateway_backoff_seconds=float(
                env.get("GATEWAY_BACKOFF_SECONDS", cls.gateway_backoff_seconds)
            ),
            currency=env.get("CHECKOUT_CURRENCY", cls.currency),
            reserve_max_attempts=int(
                env.get("RESERVE_MAX_ATTEMPTS", cls.reserve_max_attempts)
            ),
            abandon_after_seconds=int(
                env.get("CHECKOUT_ABANDON_SECONDS", cls.abandon_after_seconds)
            ),
            reconcile_interval_seconds=float(
                env.get("RECONCILE_INTERVAL_SECONDS", cls.reconcile_interval_seconds)
            ),
            log_level=env.get("LOG_LEVEL", cls.log_level),
        )
