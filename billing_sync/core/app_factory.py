from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .container import ApplicationContainer
from .logging import configure_logging
from ..application.services.subscription_query_service import SubscriptionQueryService
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..presentation.api.routers import subscription as subscription_router
from ..presentation.api.routers import webhooks as webhooks_router
from ..presentation.websocket import routes as websocket_routes
from ..services.event_classifier import EventClassifier
from ..services.event_verifier import EventVerifier
from ..services.reconciler import Reconciler
from ..services.stripe_service import StripeService
from ..services.subscription_notifier import SubscriptionNotifier

logger = logging.getLogger(__name__)


def create_application(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(title="Billing Sync", lifespan=_create_lifespan(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router.router)
    app.include_router(subscription_router.router)
    app.include_router(websocket_routes.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        return {"ok": True, "stripe_configured": container.stripe_service.is_configured()}

    return app


def _create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        persistence = SQLitePersistence(
            settings.database_path, busy_timeout=settings.store_timeout_seconds
        )
        stripe_service = StripeService(settings.stripe_secret_key)
        notifier = SubscriptionNotifier(send_timeout=settings.notify_timeout_seconds)
        reconciler = Reconciler(
            persistence,
            stripe_service,
            notifier,
            store_timeout=settings.store_timeout_seconds,
            provider_timeout=settings.provider_timeout_seconds,
        )

        container = ApplicationContainer(
            settings=settings,
            persistence=persistence,
            stripe_service=stripe_service,
            event_verifier=EventVerifier(
                settings.stripe_webhook_secret, tolerance=settings.stripe_webhook_tolerance
            ),
            event_classifier=EventClassifier(),
            notifier=notifier,
            reconciler=reconciler,
            subscription_query_service=SubscriptionQueryService(persistence, settings.plan_names),
        )

        app.state.container = container  # type: ignore[attr-defined]
        if not stripe_service.is_configured():
            logger.warning("STRIPE_SECRET_KEY not set; events needing subscription details will fail.")

        try:
            yield
        finally:
            await notifier.close()
            persistence.close()

    return lifespan
