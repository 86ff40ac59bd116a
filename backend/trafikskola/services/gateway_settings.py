# backend/trafikskola/services/gateway_settings.py
"""
Payment gateway configuration provider.

Credentials and URLs live in the ``site_settings`` table (category
``payment``) so admins can rotate them without a deploy; environment
settings fill any key the table does not define. Loading goes through a
provider object with a TTL cache and an explicit ``invalidate()`` which the
admin settings flow calls after saving. The provider is created once per
application and passed to services, never looked up globally.
"""

from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session, sessionmaker

from ..core.config import Settings, settings as default_settings
from ..core.enums import GatewayEnvironment
from ..repositories.factory import RepositoryFactory

logger = logging.getLogger(__name__)

PAYMENT_CATEGORY = "payment"


@dataclass(frozen=True)
class GatewaySettings:
    enabled: bool
    api_key: str
    api_secret: str
    environment: str
    api_url: str
    public_url: str
    webhook_secret: Optional[str] = None
    timeout_seconds: float = 30.0
    payment_methods_include: tuple[str, ...] = field(default_factory=tuple)
    payment_methods_exclude: tuple[str, ...] = field(default_factory=tuple)


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_list(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def build_gateway_settings(
    rows: Dict[str, Optional[str]], config: Settings = default_settings
) -> GatewaySettings:
    """Merge ``site_settings`` rows over environment defaults."""
    environment = rows.get("qliro_environment") or config.qliro_environment
    if environment not in (GatewayEnvironment.SANDBOX.value, GatewayEnvironment.PRODUCTION.value):
        logger.warning("Unknown Qliro environment %r, using sandbox", environment)
        environment = GatewayEnvironment.SANDBOX.value

    if environment == GatewayEnvironment.PRODUCTION.value:
        api_url = rows.get("qliro_prod_api_url") or config.qliro_production_url
    else:
        api_url = rows.get("qliro_dev_api_url") or config.qliro_sandbox_url

    env_secret = config.qliro_api_secret.get_secret_value() if config.qliro_api_secret else ""
    env_webhook = (
        config.qliro_webhook_secret.get_secret_value() if config.qliro_webhook_secret else None
    )
    return GatewaySettings(
        enabled=_as_bool(rows.get("qliro_enabled"), config.qliro_enabled),
        api_key=rows.get("qliro_api_key") or config.qliro_api_key or "",
        api_secret=rows.get("qliro_api_secret") or env_secret,
        environment=environment,
        api_url=api_url.rstrip("/"),
        public_url=(rows.get("public_url") or config.public_url).rstrip("/"),
        webhook_secret=rows.get("qliro_webhook_secret") or env_webhook,
        timeout_seconds=config.qliro_timeout_seconds,
        payment_methods_include=_as_list(rows.get("qliro_payment_methods_include")),
        payment_methods_exclude=_as_list(rows.get("qliro_payment_methods_exclude")),
    )


def load_gateway_settings(db: Session) -> GatewaySettings:
    rows = RepositoryFactory.create_site_setting_repository(db).get_category(PAYMENT_CATEGORY)
    return build_gateway_settings(rows)


class GatewaySettingsProvider:
    """Caches loaded gateway settings for ``ttl_seconds``."""

    def __init__(
        self,
        loader: Callable[[], GatewaySettings],
        *,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[GatewaySettings] = None
        self._loaded_at = 0.0

    @classmethod
    def from_session_factory(
        cls, session_factory: sessionmaker, *, ttl_seconds: float = 300
    ) -> "GatewaySettingsProvider":
        def _load() -> GatewaySettings:
            db = session_factory()
            try:
                return load_gateway_settings(db)
            finally:
                db.close()

        return cls(_load, ttl_seconds=ttl_seconds)

    def get(self) -> GatewaySettings:
        with self._lock:
            now = self._clock()
            if self._cached is None or now - self._loaded_at >= self._ttl:
                self._cached = self._loader()
                self._loaded_at = now
                logger.debug("Gateway settings loaded (environment=%s)", self._cached.environment)
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._loaded_at = 0.0
        logger.info("Gateway settings cache invalidated")
