import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine
from sqlmodel import Session

from core.background import PeriodicTask
from core.config import Settings, get_settings
from core.database import create_db_and_tables, create_db_engine
from core.errors import register_exception_handlers
from models.models import BillingInterval
from routes.captions import router as captions_router
from routes.checkout import router as checkout_router
from routes.subscription import router as subscription_router
from routes.usage import router as usage_router
from routes.webhook import router as webhook_router
from services.billing_provider import BillingProvider, StripeBillingClient
from services.caption_generator import CaptionGenerator
from services.checkout_service import CheckoutOrchestrator
from services.email_service import EmailService
from services.expiry_reconciler import ExpiryReconciler
from services.quota_gate import QuotaGate
from services.rate_limiter import CacheBackend, InMemoryCache, RateLimiter
from services.subscription_state import SubscriptionStateService
from services.usage_ledger import UsageLedger
from services.webhook_processor import WebhookProcessor

load_dotenv()

logger = logging.getLogger(__name__)


# =========================================
# 🏁 Lifespan (DB initialization + background tasks)
# =========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables(app.state.engine)
    logger.info("✅ Database tables created on startup.")

    tasks = app.state.periodic_tasks
    for task in tasks:
        task.start()
    yield
    for task in tasks:
        await task.stop()
    logger.info("✅ Application shutting down.")


def _expiry_sweep_job(engine: Engine, reconciler: ExpiryReconciler):
    def run():
        with Session(engine) as session:
            reconciler.sweep(session)
    return run


# =========================================
#  ✅ FastAPI App factory
# =========================================
def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    billing_provider: Optional[BillingProvider] = None,
    cache: Optional[CacheBackend] = None,
    caption_generator: Optional[CaptionGenerator] = None,
    email_service: Optional[EmailService] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    engine = engine or create_db_engine(settings.DATABASE_URL)
    billing_provider = billing_provider or StripeBillingClient(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        {
            BillingInterval.MONTHLY: settings.STRIPE_PRICE_ID_MONTHLY,
            BillingInterval.YEARLY: settings.STRIPE_PRICE_ID_YEARLY,
        },
        timeout=settings.STRIPE_TIMEOUT_SECONDS,
        webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )
    cache = cache if cache is not None else InMemoryCache()
    email_service = email_service or EmailService(settings.SENDGRID_API_KEY, settings.MAIL_FROM, settings.FRONTEND_URL)

    ledger = UsageLedger()
    states = SubscriptionStateService(ledger)
    reconciler = ExpiryReconciler(ledger)

    app = FastAPI(lifespan=lifespan, title="CaptionFlow Billing Backend")
    app.state.settings = settings
    app.state.engine = engine
    app.state.billing_provider = billing_provider
    app.state.cache = cache
    app.state.caption_generator = caption_generator
    app.state.email_service = email_service
    app.state.ledger = ledger
    app.state.subscription_states = states
    app.state.reconciler = reconciler
    app.state.quota_gate = QuotaGate(ledger, reconciler, fail_open=settings.QUOTA_FAIL_OPEN)
    app.state.rate_limiter = RateLimiter(
        cache,
        guest_limit=settings.GUEST_RATE_LIMIT,
        user_limit=settings.USER_RATE_LIMIT,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    app.state.checkout = CheckoutOrchestrator(
        billing_provider,
        states,
        success_url=settings.STRIPE_SUCCESS_URL,
        cancel_url=settings.STRIPE_CANCEL_URL,
        price_fallback=settings.PREMIUM_PRICE_FALLBACK,
        currency_fallback=settings.PREMIUM_CURRENCY_FALLBACK,
    )
    app.state.webhook_processor = WebhookProcessor(billing_provider, states)

    background = [
        PeriodicTask(
            "expiry-sweep",
            _expiry_sweep_job(engine, reconciler),
            settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
            run_immediately=True,
        ),
    ]
    if isinstance(cache, InMemoryCache):
        background.append(PeriodicTask("rate-limit-sweep", cache.sweep, settings.RATE_LIMIT_SWEEP_SECONDS))
    app.state.periodic_tasks = background

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL, "http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    # =========================================
    # 📦 Routers
    # =========================================
    app.include_router(checkout_router)
    app.include_router(webhook_router)  # ✅ Stripe webhook (raw body, signature checked)
    app.include_router(subscription_router)
    app.include_router(usage_router)
    app.include_router(captions_router)

    # =========================================
    # 🩺 Health Check
    # =========================================
    @app.get("/health")
    def health_check():
        return {"status": "ok", "message": "Backend is running"}

    return app


app = create_app()
