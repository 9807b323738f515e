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


def _getenv_csv_set(name: str) -> set[str]:
    raw = _getenv(name)
    if raw is None:
        return set()
    parts = [p.strip().lower() for p in raw.split(",")]
    return {p for p in parts if p}


def _getenv_credit_map(name: str) -> dict[str, int]:
    # "prod_basic:100,prod_pro:1000"
    raw = _getenv(name)
    if raw is None:
        return {}
    out: dict[str, int] = {}
    for part in raw.split(","):
        key, sep, value = part.partition(":")
        key = key.strip()
        if not sep or not key:
            continue
        try:
            out[key] = int(value.strip())
        except ValueError:
            continue
    return out


INSECURE_SECRETS: set[str] = {
    "",
    "change_me_in_production",
    "dev-anon-id-hash-key",
    "dev-demo-cookie-secret",
}

DEFAULT_PRODUCT_CREDITS: dict[str, int] = {
    "prod_basic": 100,
    "prod_pro": 1000,
    "prod_enterprise": 10000,
}


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./riahunter.db") or "sqlite:///./riahunter.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)

        self.supabase_url = _getenv("SUPABASE_URL") or _getenv("NEXT_PUBLIC_SUPABASE_URL")
        self.supabase_anon_key = _getenv("SUPABASE_ANON_KEY") or _getenv("NEXT_PUBLIC_SUPABASE_ANON_KEY")
        self.supabase_service_role_key = _getenv("SUPABASE_SERVICE_ROLE_KEY")
        self.supabase_jwt_audience = _getenv("SUPABASE_JWT_AUD", "authenticated")
        self.supabase_jwt_issuer = _getenv("SUPABASE_JWT_ISSUER")
        self.supabase_jwt_secret = _getenv("SUPABASE_JWT_SECRET")
        self.admin_emails = _getenv_csv_set("ADMIN_EMAILS")

        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")
        self.frontend_url = _getenv("FRONTEND_URL", "http://localhost:3000") or "http://localhost:3000"

        self.anon_id_hash_key = _getenv("ANON_ID_HASH_KEY", "dev-anon-id-hash-key") or "dev-anon-id-hash-key"
        self.anon_cookie_name = _getenv("ANON_COOKIE_NAME", "ria-hunter-anon-id") or "ria-hunter-anon-id"
        self.anon_cookie_max_age_days = max(1, _getenv_int("ANON_COOKIE_MAX_AGE_DAYS", 30))
        self.initial_free_credits = max(0, _getenv_int("INITIAL_FREE_CREDITS", 5))

        self.demo_cookie_name = _getenv("DEMO_COOKIE_NAME", "rh_demo") or "rh_demo"
        self.demo_cookie_secret = _getenv("DEMO_COOKIE_SECRET", "dev-demo-cookie-secret") or "dev-demo-cookie-secret"
        self.demo_searches_allowed = max(0, _getenv_int("DEMO_SEARCHES_ALLOWED", 5))
        self.demo_session_ttl_hours = max(1, _getenv_int("DEMO_SESSION_TTL_HOURS", 24))

        self.subscription_cache_ttl_s = max(1, _getenv_int("SUBSCRIPTION_CACHE_TTL_S", 30))

        self.stripe_webhook_secret = _getenv("STRIPE_WEBHOOK_SECRET")
        self.stripe_webhook_tolerance_s = max(1, _getenv_int("STRIPE_WEBHOOK_TOLERANCE_S", 300))
        self.stripe_default_subscription_credits = max(0, _getenv_int("STRIPE_DEFAULT_SUBSCRIPTION_CREDITS", 100))
        self.stripe_product_credits = _getenv_credit_map("STRIPE_PRODUCT_CREDITS") or dict(DEFAULT_PRODUCT_CREDITS)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def demo_session_ttl_s(self) -> int:
        return self.demo_session_ttl_hours * 3600

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins

    def validate_secrets(self) -> None:
        """Fail fast when production still runs on the development secrets."""
        if not self.is_production:
            return
        if self.anon_id_hash_key in INSECURE_SECRETS or len(self.anon_id_hash_key) < 24:
            raise RuntimeError("ANON_ID_HASH_KEY is insecure. Configure a strong non-default key (>=24 chars).")
        if self.demo_cookie_secret in INSECURE_SECRETS or len(self.demo_cookie_secret) < 24:
            raise RuntimeError("DEMO_COOKIE_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")


settings = Settings()
