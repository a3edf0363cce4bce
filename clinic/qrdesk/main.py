"""FastAPI entry-point for the qrdesk registration server."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .logging_config import configure_logging
from .server.desk import Desk, build_desk
from .server.errors import DeskError
from .server.routers import auth as auth_router
from .server.routers import mappings, qr, registrations
from .server.tokens import Clock, utcnow

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, *, clock: Clock = utcnow) -> FastAPI:
    settings = settings or get_settings()
    desk: Desk = build_desk(settings, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await desk.hub.start()
        logger.info("qrdesk server started")
        yield
        await desk.hub.stop()
        logger.info("qrdesk server shutdown complete")

    app = FastAPI(title="qrdesk", version="0.1.0", lifespan=lifespan)
    app.state.desk = desk

    @app.exception_handler(DeskError)
    async def desk_error_handler(request: Request, exc: DeskError) -> JSONResponse:
        logger.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error in %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"msg": "Invalid request", "code": "validation_error", "details": {"errors": jsonable_encoder(exc.errors())}},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all exception handler to prevent application crashes."""
        logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"msg": "Internal server error", "code": "internal_error"},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router.router, prefix="/api/auth", tags=["Auth"])
    app.include_router(qr.router, prefix="/api/qr", tags=["QR"])
    app.include_router(mappings.router, prefix="/api/device-doctor-mapping", tags=["Mappings"])
    app.include_router(registrations.router, prefix="/api/registration", tags=["Registrations"])

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        busy = await desk.mappings.busy_devices()
        return JSONResponse(
            {
                "status": "ok",
                "connections": desk.hub.connection_count,
                "busyDevices": sorted(busy),
            }
        )

    @app.websocket("/ws")
    async def channel_socket(ws: WebSocket) -> None:
        await desk.hub.serve(ws)

    return app


def run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
    uvicorn.run(
        create_app(settings),
        host=settings.server_host,
        port=settings.server_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
