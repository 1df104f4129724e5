#!/usr/bin/env python3
"""
FastAPI Gateway - HTTP entry point for payment webhooks, storefront API and scheduled jobs
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from config import get_config
from monitoring.production_logging import configure_logging
from services.container import ServiceContainer, build_services
from webhook_handler import WebhookRejected

configure_logging()

logger = logging.getLogger(__name__)

WEBHOOK_GATEWAYS = ('cashfree', 'razorpay', 'upigateway')


async def run_with_timeout(coro, timeout_seconds: float, task_name: str, default=None):
    """Run a coroutine with timeout, returning default on timeout"""
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"⏰ {task_name} timed out after {timeout_seconds}s")
        return default


def _scheduled(name: str, job: Callable[[], Awaitable[Any]], timeout_seconds: float = 600):
    async def _run():
        started = time.monotonic()
        try:
            await run_with_timeout(job(), timeout_seconds, name)
            logger.info(f"✅ Scheduled job {name} finished in {time.monotonic() - started:.1f}s")
        except Exception as e:
            logger.exception(f"❌ Scheduled job {name} failed: {e}")
    return _run


def build_scheduler(services: ServiceContainer) -> AsyncIOScheduler:
    settings = services.config.scheduler
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _scheduled('batch_provisioning', lambda: services.batch_provisioner.run(services.batch_config())),
        'interval',
        minutes=settings.batch_interval_minutes,
        id='batch_provisioning',
        name='Batch Provisioning Retry',
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    scheduler.add_job(
        _scheduled('renewal_recovery', services.recovery.process_recovery),
        'interval',
        minutes=settings.recovery_interval_minutes,
        id='renewal_recovery',
        name='Pending Renewal Recovery',
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    scheduler.add_job(
        _scheduled('stale_renewal_cleanup', services.recovery.clear_stale),
        'interval',
        minutes=settings.stale_cleanup_interval_minutes,
        id='stale_renewal_cleanup',
        name='Stale Renewal Cleanup',
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    scheduler.add_job(
        _scheduled('status_sync', services.status_sync.run),
        'interval',
        minutes=settings.status_sync_interval_minutes,
        id='status_sync',
        name='Provider Status Sync',
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    scheduler.add_job(
        _scheduled('abandoned_order_cleanup', services.recovery.purge_abandoned_orders),
        'cron',
        hour=4,
        minute=0,
        id='abandoned_order_cleanup',
        name='Daily Abandoned Order Cleanup',
        replace_existing=True
    )
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire services, start the scheduler; HTTP always starts even when a subsystem fails"""
    logger.info("=" * 80)
    logger.info("🚀 STARTING VPS STOREFRONT GATEWAY")
    logger.info("=" * 80)

    config = app.state.services.config if app.state.services else get_config()
    try:
        validation = config.validate()
        if not validation['valid']:
            logger.error("❌ Configuration validation failed:")
            for issue in validation['issues']:
                logger.error(f"  • {issue}")
            logger.warning("⚠️ Starting with invalid configuration - some features may not work")
        for warning in validation['warnings']:
            logger.warning(f"  • {warning}")
    except Exception as config_error:
        logger.error(f"❌ Configuration validation error: {config_error}")

    owns_services = app.state.services is None
    if owns_services:
        from database import init_database
        try:
            await init_database()
            app.state.service_status['database'] = True
        except Exception as db_error:
            logger.error(f"❌ Database initialization failed: {db_error}")
        app.state.services = build_services(config)
    else:
        app.state.service_status['database'] = True

    services: ServiceContainer = app.state.services
    scheduler: Optional[AsyncIOScheduler] = None
    if config.scheduler.enabled:
        try:
            logger.info("📅 Initializing APScheduler for background jobs...")
            scheduler = build_scheduler(services)
            scheduler.start()
            app.state.service_status['scheduler'] = True
            logger.info(f"✅ Scheduler started with {len(scheduler.get_jobs())} jobs")
        except Exception as scheduler_error:
            logger.error(f"❌ Scheduler failed to start: {scheduler_error}")
            scheduler = None
    else:
        logger.info("📅 Scheduler disabled by SCHEDULER_ENABLED")

    try:
        yield
    finally:
        logger.info("🛑 Shutting down...")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        if owns_services:
            await services.close()
            from database import close_connection_pool
            close_connection_pool()
        else:
            await services.dispatcher.drain(timeout=5)
        logger.info("✅ Shutdown complete")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title="VPS Storefront API",
        description="Payment confirmation, provisioning, renewals and server actions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.service_status = {'database': False, 'scheduler': False}

    @app.get("/health", include_in_schema=False)
    @app.get("/api/health", include_in_schema=False)
    async def health_check():
        """Always 200 while the HTTP server runs; subsystem state in the body"""
        status = app.state.service_status
        container: Optional[ServiceContainer] = app.state.services
        return {
            "status": "healthy" if all(status.values()) else "degraded",
            "http_server": "operational",
            "timestamp": int(time.time()),
            "services": {
                "database": "connected" if status['database'] else "failed",
                "scheduler": "running" if status['scheduler'] else "stopped",
            },
            "provisioning_in_flight": container.dispatcher.in_flight if container else 0,
        }

    async def _gateway_webhook(request: Request, gateway_name: str):
        body = await request.body()
        container: ServiceContainer = request.app.state.services
        logger.info(f"📦 {gateway_name.upper()} webhook received ({len(body)} bytes)")
        try:
            result = await container.webhook_handler.receive(gateway_name, body, dict(request.headers))
        except WebhookRejected as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
        return JSONResponse({"status": "ok", "result": result, "timestamp": int(time.time())})

    @app.post("/webhook/cashfree", include_in_schema=False)
    @app.post("/api/webhook/cashfree", include_in_schema=False)
    async def cashfree_webhook(request: Request):
        return await _gateway_webhook(request, 'cashfree')

    @app.post("/webhook/razorpay", include_in_schema=False)
    @app.post("/api/webhook/razorpay", include_in_schema=False)
    async def razorpay_webhook(request: Request):
        return await _gateway_webhook(request, 'razorpay')

    @app.post("/webhook/upigateway", include_in_schema=False)
    @app.post("/api/webhook/upigateway", include_in_schema=False)
    async def upigateway_webhook(request: Request):
        return await _gateway_webhook(request, 'upigateway')

    @app.get("/api/v1", include_in_schema=False)
    async def api_root():
        """REST API root endpoint - lists available endpoints"""
        return {
            "name": "VPS Storefront API",
            "version": "1.0.0",
            "endpoints": {
                "checkout": "/api/v1/orders/checkout",
                "renew": "/api/v1/orders/{order_id}/renew",
                "server_actions": "/api/v1/server-actions",
                "admin_provisioning": "/api/v1/admin/provisioning/batch",
                "admin_recovery": "/api/v1/admin/renewals/recovery",
                "webhooks": [f"/api/webhook/{name}" for name in WEBHOOK_GATEWAYS],
            }
        }

    from api.routes import payments, provisioning, server_actions

    app.include_router(payments.router, prefix="/api/v1", tags=["Payments"])
    app.include_router(provisioning.router, prefix="/api/v1", tags=["Provisioning"])
    app.include_router(server_actions.router, prefix="/api/v1", tags=["Server Actions"])

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions"""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "timestamp": int(time.time())}
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"❌ Unhandled exception on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "timestamp": int(time.time())}
        )

    return app


app = create_app()

# Development server
if __name__ == "__main__":
    uvicorn.run(
        "fastapi_server:app",
        host="0.0.0.0",
        port=5000,
        reload=False,
        log_level="info"
    )
