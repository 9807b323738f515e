import os

from riahunter.core.database import Base, create_db_engine, create_session_factory
from riahunter.core.errors import AuthError
from riahunter.core.security import ADMIN_ROLE, CurrentUser
from riahunter.core.settings import Settings
from riahunter.models import credit_account, credit_ledger, profile, stripe_event, subscription  # noqa: F401


class FakeVerifier:
    """Token -> user table plus a fixed admin set."""

    def __init__(self, users: dict[str, CurrentUser] | None = None, admins: set[str] | None = None) -> None:
        self.users = dict(users or {})
        self.admins = set(admins or ())

    def verify(self, session_token: str) -> CurrentUser:
        user = self.users.get(session_token)
        if user is None:
            raise AuthError()
        return user

    def has_role(self, user_id: str, role: str) -> bool:
        return role == ADMIN_ROLE and user_id in self.admins


class FakeSubscriptions:
    def __init__(self, subscribers: set[str] | None = None) -> None:
        self.subscribers = set(subscribers or ())

    def is_active_subscriber(self, account_id: str) -> bool:
        return account_id in self.subscribers


def make_settings(**overrides) -> Settings:
    s = Settings()
    s.environment = "development"
    s.database_url = "sqlite://"
    s.db_auto_create = True
    s.supabase_url = None
    s.supabase_service_role_key = None
    s.supabase_jwt_secret = "test-jwt-secret"
    s.supabase_jwt_issuer = None
    s.supabase_jwt_audience = "authenticated"
    s.admin_emails = set()
    s.cors_allow_origins = None
    s.anon_id_hash_key = "test-anon-hash-key"
    s.anon_cookie_name = "ria-hunter-anon-id"
    s.initial_free_credits = 5
    s.demo_cookie_name = "rh_demo"
    s.demo_cookie_secret = "test-demo-cookie-secret"
    s.demo_searches_allowed = 5
    s.demo_session_ttl_hours = 24
    s.stripe_webhook_secret = "whsec_test"
    s.stripe_webhook_tolerance_s = 300
    s.stripe_default_subscription_credits = 100
    s.stripe_product_credits = {"prod_basic": 100, "prod_pro": 1000}
    for key, value in overrides.items():
        setattr(s, key, value)
    return s


def memory_database():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    return engine, create_session_factory(engine)


def file_database(directory: str):
    engine = create_db_engine(f"sqlite:///{os.path.join(directory, 'ledger.db')}")
    Base.metadata.create_all(bind=engine)
    return engine, create_session_factory(engine)
