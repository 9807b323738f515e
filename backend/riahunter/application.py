import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from riahunter.api.endpoints import admin, billing, credits, session
from riahunter.core.database import Base, create_db_engine, create_session_factory
from riahunter.core.errors import MeteringError
from riahunter.core.security import AuthVerifier, SupabaseAuthVerifier
from riahunter.core.settings import Settings, settings as default_settings
from riahunter.models import credit_account, credit_ledger, profile, stripe_event, subscription  # noqa: F401
from riahunter.services.admin_gate import AdminAdjustmentGate
from riahunter.services.billing import StripeWebhookProcessor
from riahunter.services.demo_session import DemoQuotaCounter
from riahunter.services.identity import IdentityResolver
from riahunter.services.ledger_store import LedgerStore, SqlLedgerStore
from riahunter.services.metering import MeteringEngine
from riahunter.services.subscriptions import DbSubscriptionChecker, SubscriptionChecker


logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    verifier: AuthVerifier | None = None,
    subscriptions: SubscriptionChecker | None = None,
    store: LedgerStore | None = None,
) -> FastAPI:
    settings = settings or default_settings
    settings.validate_secrets()

    engine = engine or create_db_engine(settings.database_url)
    if settings.db_auto_create:
        Base.metadata.create_all(bind=engine)
    session_factory = create_session_factory(engine)

    db_subscriptions = DbSubscriptionChecker(session_factory, cache_ttl_s=settings.subscription_cache_ttl_s)
    subscriptions = subscriptions or db_subscriptions
    verifier = verifier or SupabaseAuthVerifier(settings, session_factory)
    metering = MeteringEngine(store or SqlLedgerStore(session_factory), subscriptions)

    app = FastAPI(title="RIA Hunter Credits API")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.verifier = verifier
    app.state.metering = metering
    app.state.resolver = IdentityResolver(verifier, settings.anon_id_hash_key)
    app.state.demo_counter = DemoQuotaCounter(
        settings.demo_cookie_secret,
        allowed=settings.demo_searches_allowed,
        ttl_s=settings.demo_session_ttl_s,
    )
    app.state.admin_gate = AdminAdjustmentGate(metering, verifier)
    app.state.webhook_processor = StripeWebhookProcessor(
        metering,
        session_factory,
        settings,
        subscriptions=db_subscriptions,
    )

    origins = settings.resolved_cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(MeteringError)
    async def metering_error_handler(request: Request, exc: MeteringError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("api.error path=%s code=%s", request.url.path, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    app.include_router(credits.router, prefix="/api", tags=["credits"])
    app.include_router(session.router, prefix="/api", tags=["session"])
    app.include_router(admin.router, prefix="/api", tags=["admin"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app
