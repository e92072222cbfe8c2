import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./paywall.db") or "sqlite:///./paywall.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()

        self.basic_auth_enabled = _getenv_bool("BASIC_AUTH_ENABLED", default=False)
        self.basic_auth_username = _getenv("BASIC_AUTH_USERNAME")
        self.basic_auth_password = _getenv("BASIC_AUTH_PASSWORD")
        self.admin_username = _getenv("ADMIN_USERNAME")
        self.admin_password = _getenv("ADMIN_PASSWORD")
        self.cron_secret = _getenv("CRON_SECRET")
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")

        self.mercadopago_access_token = _getenv("MERCADOPAGO_ACCESS_TOKEN") or _getenv("MERCADO_PAGO_ACCESS_TOKEN")
        self.mercadopago_api_base = (
            _getenv("MERCADOPAGO_API_BASE", "https://api.mercadopago.com") or "https://api.mercadopago.com"
        ).rstrip("/")
        self.mercadopago_notification_url = _getenv("MERCADOPAGO_NOTIFICATION_URL")
        self.mercadopago_webhook_secret = _getenv("MERCADOPAGO_WEBHOOK_SECRET")

        self.gateway_max_retries = max(1, _getenv_int("GATEWAY_MAX_RETRIES", 3))
        self.gateway_retry_delay_ms = max(0, _getenv_int("GATEWAY_RETRY_DELAY_MS", 2000))
        self.gateway_timeout_s = float(_getenv("GATEWAY_TIMEOUT_S", "20") or "20")

        self.default_plan_id = (_getenv("DEFAULT_PLAN_ID", "monthly") or "monthly").lower()
        self.manual_fix_days = max(1, _getenv_int("MANUAL_FIX_DAYS", 30))
        self.subscriber_cache_ttl_s = max(0, _getenv_int("SUBSCRIBER_CACHE_TTL_S", 300))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:3000", "http://localhost:8000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins


settings = Settings()
