"""
FastAPI Application Entry Point

Order Staging Pipeline - stage, pay, reconcile, migrate.
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - POST /api/orders/stage: Stage a new order
    - POST /api/orders/{staging_id}/payment-link: Create a payment link
    - GET /api/orders/{staging_id}/status: Payment / migration status
    - POST /webhook/payments: Payment gateway webhook
    - GET /health: System health check

Version: 1.0.0
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from order_pipeline.core.config import get_settings, setup_logging
from order_pipeline.core.exceptions import PaymentLinkError, StagedOrderNotFound
from order_pipeline.database import get_db, get_engine, init_db
from order_pipeline.pipeline import Pipeline, build_pipeline
from order_pipeline.schemas import (
    ErrorResponse,
    HealthResponse,
    PaymentLinkInfo,
    PaymentLinkRequest,
    StageOrderRequest,
    StageOrderResponse,
    StagingStatus,
    WebhookAck,
)

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build and start the pipeline on startup; stop it (with a final
    staging-store flush) on shutdown.
    """
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Database initialized")

    pipeline: Optional[Pipeline] = getattr(app.state, "pipeline", None)
    if pipeline is None:
        pipeline = build_pipeline()
        app.state.pipeline = pipeline

    logger.info(f"✅ Payment Gateway: {pipeline.gateway.provider_name}")
    logger.info(f"✅ Notifier: {pipeline.notifier.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    await pipeline.start()

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    logger.info("Shutting down...")
    await pipeline.stop()
    await get_engine().dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    application = FastAPI(
        title=settings.app_name,
        description=(
            "Stages orders while customers pay, reconciles payment gateway "
            "events and durably migrates paid orders to the permanent store."
        ),
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if pipeline is not None:
        application.state.pipeline = pipeline

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(application)
    return application


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


# =============================================================================
# ROUTES
# =============================================================================

def register_routes(app: FastAPI) -> None:

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """API root with navigation links."""
        return {
            "message": f"🍕 Welcome to {settings.app_name}",
            "version": settings.app_version,
            "environment": settings.env_mode.value,
            "documentation": "/docs",
            "health": "/health",
        }

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="System Health Check",
    )
    async def health_check(
        db: AsyncSession = Depends(get_db),
        pipeline: Pipeline = Depends(get_pipeline),
    ) -> HealthResponse:
        """Verify all system components are operational."""

        db_status = "healthy"
        try:
            await db.execute(text("SELECT 1"))
        except Exception as e:
            db_status = f"unhealthy: {str(e)}"
            logger.error(f"Database health check failed: {e}")

        redis_status = "healthy"
        try:
            r = redis.Redis.from_url(settings.redis_url, socket_timeout=2, socket_connect_timeout=2)
            await asyncio.to_thread(r.ping)
            r.close()
        except Exception as e:
            redis_status = f"unhealthy: {str(e)}"
            logger.error(f"Redis health check failed: {e}")

        payment_status = "healthy" if await pipeline.gateway.health_check() else "unhealthy"
        notifier_status = "healthy" if await pipeline.notifier.health_check() else "unhealthy"

        overall = "operational" if all(
            s == "healthy" for s in [db_status, redis_status, payment_status, notifier_status]
        ) else "degraded"

        return HealthResponse(
            status=overall,
            database=db_status,
            redis=redis_status,
            payment_gateway=payment_status,
            notifier=notifier_status,
            staged_orders=pipeline.store.count(),
            timestamp=datetime.now(),
        )

    # =========================================================================
    # STAGING ENDPOINTS
    # =========================================================================

    @app.post(
        "/api/orders/stage",
        response_model=StageOrderResponse,
        status_code=201,
        tags=["Orders"],
        summary="Stage Order",
    )
    async def stage_order(
        order_data: StageOrderRequest,
        pipeline: Pipeline = Depends(get_pipeline),
    ) -> StageOrderResponse:
        """Hold an order in the staging store while the customer pays."""
        logger.info(f"Staging order for: {order_data.customer_name}")
        staged = pipeline.checkout.stage(order_data)
        return StageOrderResponse(
            staging_id=staged.id,
            order_number=staged.order_number,
            total=staged.total,
            expires_at=staged.expires_at,
        )

    @app.post(
        "/api/orders/{staging_id}/payment-link",
        response_model=PaymentLinkInfo,
        responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
        tags=["Orders"],
        summary="Create Payment Link",
    )
    async def create_payment_link(
        staging_id: str,
        request_data: Optional[PaymentLinkRequest] = None,
        pipeline: Pipeline = Depends(get_pipeline),
    ) -> PaymentLinkInfo:
        expiration_days = request_data.expiration_days if request_data else None
        return await pipeline.checkout.create_payment_link(staging_id, expiration_days)

    @app.get(
        "/api/orders/{staging_id}/status",
        response_model=StagingStatus,
        responses={404: {"model": ErrorResponse}},
        tags=["Orders"],
    )
    async def get_staging_status(
        staging_id: str,
        pipeline: Pipeline = Depends(get_pipeline),
    ) -> StagingStatus:
        return pipeline.checkout.get_staging_status(staging_id)

    # =========================================================================
    # PAYMENT WEBHOOK
    # =========================================================================

    @app.post(
        "/webhook/payments",
        response_model=WebhookAck,
        tags=["Webhooks"],
        summary="Payment Gateway Webhook",
    )
    async def payment_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
        pipeline: Pipeline = Depends(get_pipeline),
    ) -> WebhookAck:
        """
        Receive payment gateway events.

        Once the signature checks out the response is always
        ``{"received": true}``; downstream failures are retried out-of-band.
        """
        payload = await request.body()
        accepted = await pipeline.reconciler.handle_webhook(
            pipeline.gateway, payload, stripe_signature
        )
        if not accepted:
            raise HTTPException(status_code=400, detail="Invalid webhook signature or payload")
        return WebhookAck()

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(StagedOrderNotFound)
    async def staged_order_not_found_handler(request: Request, exc: StagedOrderNotFound) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="Staged order not found", detail=str(exc)).model_dump(),
        )

    @app.exception_handler(PaymentLinkError)
    async def payment_link_error_handler(request: Request, exc: PaymentLinkError) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content=ErrorResponse(error="Payment link creation failed", detail=str(exc)).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all exception handler."""
        logger.exception(f"Unhandled exception: {exc}")

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal Server Error",
                "detail": str(exc) if settings.debug else "An unexpected error occurred",
            },
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "order_pipeline.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
