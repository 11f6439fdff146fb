"""
FastAPI application entry point and composition root.
"""
from contextlib import asynccontextmanager
from datetime import timedelta
from functools import partial

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import AccessLogMiddleware, RequestIDMiddleware
from api.routes import payments as payments_routes
from api.routes import premium as premium_routes
from application.services.payment_service import PaymentOrchestrator
from core.config import Settings, settings as default_settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from core.settings import PaymentSettings, payment_settings as default_payment_settings
from domain.payment.plan import PlanCatalog
from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.external.payments import build_notification_verifier, build_payment_adapters
from infrastructure.locks import LocalPayerLocks, RedisPayerLocks
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


def build_orchestrator(
    settings: Settings,
    payment_settings: PaymentSettings,
    *,
    uow_factory,
    payer_locks,
    transport=None,
) -> PaymentOrchestrator:
    catalog = PlanCatalog.build(payment_settings.plans.currency, payment_settings.plans.prices)
    adapters = build_payment_adapters(
        payment_settings,
        frontend_url=settings.FRONTEND_URL,
        backend_url=settings.BACKEND_URL,
        transport=transport,
    )
    return PaymentOrchestrator(
        catalog=catalog,
        adapters=adapters,
        verifier=build_notification_verifier(payment_settings, adapters),
        uow_factory=uow_factory,
        payer_locks=payer_locks,
        intent_ttl=timedelta(seconds=payment_settings.intent_ttl_seconds),
        provider_timeout=payment_settings.timeouts.total,
        storage_timeout=payment_settings.storage_timeout_seconds,
    )


def create_app(
    settings: Settings = default_settings,
    payment_settings: PaymentSettings = default_payment_settings,
) -> FastAPI:
    # logging is configured here, not at import time
    configure_logging(debug=settings.DEBUG)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(settings.database.url, echo=settings.database.echo)
        await create_tables(engine)
        session_factory = build_session_factory(engine)
        logger.info("database_initialized", url=engine.url.render_as_string(hide_password=True))

        if settings.redis.url:
            payer_locks = RedisPayerLocks.from_url(
                settings.redis.url,
                namespace=settings.redis.namespace,
                timeout=settings.redis.lock_timeout,
                blocking_timeout=settings.redis.lock_blocking_timeout,
            )
            logger.info("payer_locks_selected", backend="redis")
        else:
            payer_locks = LocalPayerLocks()
            logger.info("payer_locks_selected", backend="local")

        orchestrator = build_orchestrator(
            settings,
            payment_settings,
            uow_factory=partial(SQLAlchemyUnitOfWork, session_factory),
            payer_locks=payer_locks,
        )
        app.state.orchestrator = orchestrator
        logger.info(
            "application_started",
            environment=settings.ENVIRONMENT,
            payment_environment=payment_settings.environment,
            providers=orchestrator.providers,
        )

        yield

        await orchestrator.aclose()
        if isinstance(payer_locks, RedisPayerLocks):
            await payer_locks.aclose()
        await engine.dispose()
        logger.info("application_shutdown")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
        description="Payment orchestration and premium entitlements",
    )

    # outermost last: RequestID runs first so access logs carry request_id
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(payments_routes.router, prefix="/api/v1")
    app.include_router(premium_routes.router, prefix="/api/v1")

    @app.get("/", tags=["Root"])
    async def root():
        return success_response(
            data={
                "name": settings.PROJECT_NAME,
                "version": settings.VERSION,
                "docs": "/docs",
                "redoc": "/redoc",
            },
            message="Welcome",
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        return success_response(data={"status": "healthy"}, message="OK")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.DEBUG,
        log_level="debug" if default_settings.DEBUG else "info",
    )
