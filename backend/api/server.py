"""
Town Treasure Payments Server
=============================
Production-ready FastAPI server with:
- M-Pesa STK push initiation, callback and status polling
- Pay-on-delivery checkout and unpaid order management
- Background reconciliation sweep
- Health monitoring

pip install fastapi uvicorn pydantic redis asyncpg httpx structlog
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn
import structlog

from database import Database, DatabaseConfig, PostgresOrderStore
from payments.callback import PaymentCallbackHandler
from payments.checkout import CheckoutService
from payments.errors import PaymentError, ReconciliationError, ValidationError
from payments.initiation import PaymentInitiationHandler
from payments.mpesa_client import DarajaClient, MpesaConfig
from payments.orders import OrderService
from payments.status import PaymentStatusHandler
from schemas.payments import CALLBACK_ACK, utcnow
from storage.base import IOrderStore, IPaymentStateStore
from storage.memory import InMemoryOrderStore, InMemoryPaymentStateStore
from storage.redis_store import RedisConfig, RedisPaymentStateStore
from tasks.reconciliation import ReconciliationConfig, Reconciler

VERSION = "1.0.0"

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # "redis" = Redis payment state + PostgreSQL orders, "memory" = single process
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "redis")


config = ServerConfig()


def configure_logging(env: str = config.ENV):
    """Configure structured logging once per process."""
    renderer = (
        structlog.processors.JSONRenderer()
        if env == "production"
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    )


# =============================================================================
# SERVICES
# =============================================================================

@dataclass
class AppServices:
    """Everything the endpoints need, built once per process."""
    state_store: IPaymentStateStore
    order_store: IOrderStore
    daraja: DarajaClient
    initiation: PaymentInitiationHandler
    callback: PaymentCallbackHandler
    status: PaymentStatusHandler
    checkout: CheckoutService
    orders: OrderService
    reconciler: Reconciler
    backend: str = "memory"

    @classmethod
    def from_stores(
        cls,
        state_store: IPaymentStateStore,
        order_store: IOrderStore,
        daraja: DarajaClient,
        lock_ttl_seconds: int = 30,
        reconciliation: Optional[ReconciliationConfig] = None,
        backend: str = "memory",
    ) -> "AppServices":
        return cls(
            state_store=state_store,
            order_store=order_store,
            daraja=daraja,
            initiation=PaymentInitiationHandler(state_store, order_store, daraja),
            callback=PaymentCallbackHandler(state_store, order_store, lock_ttl_seconds=lock_ttl_seconds),
            status=PaymentStatusHandler(state_store, order_store),
            checkout=CheckoutService(order_store),
            orders=OrderService(order_store),
            reconciler=Reconciler(state_store, order_store, reconciliation),
            backend=backend,
        )

    @classmethod
    async def build(cls, backend: str = config.STORAGE_BACKEND) -> "AppServices":
        daraja = DarajaClient(MpesaConfig.from_env())
        redis_config = RedisConfig.from_env()

        if backend == "redis":
            state_store = await RedisPaymentStateStore.connect(redis_config)
            db = Database(DatabaseConfig.from_env())
            await db.initialize()
            order_store = PostgresOrderStore(db)
        elif backend == "memory":
            logger.warning("storage_in_memory", note="state is lost on restart")
            state_store = InMemoryPaymentStateStore()
            order_store = InMemoryOrderStore()
        else:
            raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")

        return cls.from_stores(
            state_store,
            order_store,
            daraja,
            lock_ttl_seconds=redis_config.lock_ttl_seconds,
            reconciliation=ReconciliationConfig.from_env(),
            backend=backend,
        )

    async def close(self):
        await self.daraja.close()
        await self.state_store.close()
        await self.order_store.close()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str


# =============================================================================
# HELPERS
# =============================================================================

async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON.") from e


def _services(request: Request) -> AppServices:
    return request.app.state.services


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(services: Optional[AppServices] = None, run_background_tasks: bool = True) -> FastAPI:
    """
    Build the FastAPI app.

    Pass prebuilt services to skip backend construction (tests, scripts);
    they are closed by the caller, not by the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.ENV)
        owned = services is None
        app.state.services = services or await AppServices.build()
        app.state.started_at = utcnow()

        reconciliation_task = None
        if run_background_tasks:
            reconciliation_task = asyncio.create_task(app.state.services.reconciler.reconciliation_loop())

        yield

        # Cleanup
        logger.info("server_shutting_down")
        if reconciliation_task:
            reconciliation_task.cancel()
            try:
                await reconciliation_task
            except asyncio.CancelledError:
                pass
        if owned:
            await app.state.services.close()

    app = FastAPI(
        title="Town Treasure Groceries Payments",
        description="M-Pesa payment confirmation and order API",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log("request_failed", path=request.url.path, status=exc.status_code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("request_crashed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content=PaymentError().to_dict())

    # =========================================================================
    # HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        uptime = (utcnow() - request.app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            storage_backend=_services(request).backend,
        )

    @app.get("/ready")
    async def readiness_check():
        """Kubernetes readiness probe"""
        return {"ready": True}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # =========================================================================
    # PAYMENT ENDPOINTS
    # =========================================================================

    @app.post("/initiateMpesaPayment")
    async def initiate_mpesa_payment(request: Request):
        body = await _json_body(request)
        checkout_request_id = await _services(request).initiation.initiate(body)
        return {"checkoutRequestID": checkout_request_id}

    @app.post("/mpesaCallback")
    async def mpesa_callback(request: Request):
        """Provider webhook. Always acknowledged so Daraja stops retrying."""
        try:
            body = await request.json()
        except ValueError:
            body = None

        try:
            await _services(request).callback.handle(body)
        except ReconciliationError as e:
            logger.error("callback_not_reconciled", error=e.message, **e.context)
        except Exception as e:
            # Store outage, still acknowledged
            logger.error("callback_handler_crashed", error=str(e), error_type=type(e).__name__)

        return JSONResponse(content=dict(CALLBACK_ACK))

    @app.post("/getPaymentStatus")
    async def get_payment_status(request: Request):
        body = await _json_body(request)
        result = await _services(request).status.get_status(body)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    # =========================================================================
    # ORDER ENDPOINTS
    # =========================================================================

    @app.post("/orders/unpaid")
    async def create_unpaid_order(request: Request):
        body = await _json_body(request)
        order = await _services(request).checkout.submit_unpaid(body)
        return {"success": True, "order": order.model_dump(mode="json")}

    @app.post("/orders/cancel")
    async def cancel_order(request: Request):
        body = await _json_body(request)
        await _services(request).orders.cancel(body)
        return {"success": True}

    @app.post("/orders/remove-item")
    async def remove_order_item(request: Request):
        body = await _json_body(request)
        order = await _services(request).orders.remove_item(body)
        return {"success": True, "order": order.model_dump(mode="json")}

    @app.post("/orders/verify-receipt")
    async def verify_receipt(request: Request):
        body = await _json_body(request)
        genuine = await _services(request).orders.verify_receipt(body)
        return {"genuine": genuine}

    # =========================================================================
    # ADMIN ENDPOINTS
    # =========================================================================

    @app.get("/admin/reconciliation")
    async def reconciliation_stats(request: Request) -> Dict[str, Any]:
        return await _services(request).reconciler.get_reconciliation_stats()

    @app.post("/admin/reconciliation/run")
    async def run_reconciliation(request: Request) -> Dict[str, Any]:
        return await _services(request).reconciler.run_reconciliation_cycle()

    return app


configure_logging()
app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
