# main.py
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException

from order_service.assignment import AssignmentCoordinator
from order_service.config import Config
from order_service.database import build_database, init_db, utcnow
from order_service.driver_state import DriverStateRegistry
from order_service.errors import ServiceError
from order_service.escrow import EscrowEngine
from order_service.events import EventPublisher
from order_service.lifecycle import OrderLifecycle
from order_service.maintenance import MaintenanceReconciler
from order_service.pricing import CommissionPolicy
from order_service.routes import router
from order_service.wallet import WalletLedger
from order_service.ws_manager import ConnectionManager

# ------------------------- LOGGING -------------------------
logger = logging.getLogger("order-service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)

HTTP_ERROR_TYPES = {401: "Unauthorized", 403: "Forbidden", 404: "NotFound", 405: "MethodNotAllowed"}


def error_response(status_code: int, message: str, error_type: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error_type": error_type, **extra},
    )


def create_app(config_class=Config, clock=utcnow, notifier=None) -> FastAPI:
    config = config_class
    app = FastAPI(title="Order Service", version="2.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    ws_manager = ConnectionManager()
    app.state.config = config
    app.state.ws_manager = ws_manager
    app.state.notifier = notifier or EventPublisher(config, ws_manager)

    # ------------------------- ERRORS -------------------------
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        trace_id = getattr(request.state, "trace_id", None)
        logger.info(f"[TRACE {trace_id}] {type(exc).__name__}: {exc.message}")
        return error_response(exc.status_code, exc.message, type(exc).__name__)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(400, "Invalid request", "ValidationError", errors=jsonable_encoder(exc.errors()))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail), HTTP_ERROR_TYPES.get(exc.status_code, "HTTPException"))

    # ------------------------- STARTUP / SHUTDOWN -------------------------
    @app.on_event("startup")
    async def startup():
        logger.info("Connecting database...")
        init_db(config.DATABASE_URL)
        database = build_database(config.DATABASE_URL)
        await database.connect()

        policy = CommissionPolicy.from_config(config)
        events = app.state.notifier
        ledger = WalletLedger(database, clock, config.PLATFORM_ACCOUNT_ID)
        drivers = DriverStateRegistry(database, clock)
        escrow = EscrowEngine(database, ledger, events, config, clock)
        assignments = AssignmentCoordinator(database, drivers, events, config, policy, clock)

        app.state.database = database
        app.state.ledger = ledger
        app.state.drivers = drivers
        app.state.escrow = escrow
        app.state.assignments = assignments
        app.state.lifecycle = OrderLifecycle(database, escrow, ledger, assignments, events, config, policy, clock)
        app.state.reconciler = MaintenanceReconciler(database, escrow, ledger, drivers, config, events, clock)

        if config.MAINTENANCE_ENABLED:
            app.state.reconciler.start()
        logger.info("Startup complete.")

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.reconciler.stop()
        logger.info("Disconnecting database...")
        await app.state.database.disconnect()

    app.include_router(router)

    # ------------------------- HEALTH / METRICS / WS -------------------------
    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.websocket("/ws/orders")
    async def order_events(websocket: WebSocket, order_id: Optional[str] = None):
        await ws_manager.connect(websocket, order_id)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    return app


app = create_app()


def serve(config_class=Config):
    uvicorn.run("order_service.main:app", host=config_class.HOST, port=config_class.PORT)


# ───────────────────────────────────────────────────────────
# Entrypoint
# ───────────────────────────────────────────────────────────
if __name__ == "__main__":
    serve()
