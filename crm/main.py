import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from crm.config import Settings, settings as default_settings
from crm.database import build_engine, build_session_factory, get_db, init_db
from crm.errors import (
    ConflictError,
    PayloadTooLargeError,
    conflict_error_handler,
    request_validation_handler,
)
from crm.password_cache import TempPasswordCache, run_sweeper
from crm.routers import auth, contact, customers, users

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class JSONBodyLimitMiddleware:
    """Reject JSON bodies over ``max_mb``, whether sized by Content-Length or streamed in chunks."""

    def __init__(self, app: ASGIApp, max_mb: int):
        self.app = app
        self.max_mb = max_mb
        self.max_bytes = max_mb * 1024 * 1024

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        headers = Headers(scope=scope)
        if not headers.get("content-type", "").startswith("application/json"):
            await self.app(scope, receive, send)
            return

        detail = f"Request body exceeds the {self.max_mb} MB limit"
        content_length = headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > self.max_bytes:
            response = JSONResponse(status_code=413, content={"detail": detail})
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    raise PayloadTooLargeError(detail)
            return message

        await self.app(scope, limited_receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(app.state.engine, app.state.settings)
    sweeper = asyncio.create_task(
        run_sweeper(app.state.password_cache, app.state.settings.temp_password_sweep_seconds)
    )
    logger.info("CRM API ready")
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        app.state.engine.dispose()


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    settings = settings or default_settings
    engine = engine or build_engine(settings)

    app = FastAPI(title="Customer CRM", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.password_cache = TempPasswordCache(default_ttl=settings.temp_password_ttl_hours * 3600)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(JSONBodyLimitMiddleware, max_mb=settings.max_json_body_mb)

    app.add_exception_handler(ConflictError, conflict_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(auth.router, prefix="/auth", tags=["auth"])
    app.include_router(customers.router, prefix="/customers", tags=["customers"])
    app.include_router(users.router, prefix="/users", tags=["users"])
    app.include_router(contact.router, prefix="/contact", tags=["contact"])

    @app.get("/health")
    def health(db: Session = Depends(get_db)):
        db.execute(text("SELECT 1"))
        return {"ok": True}

    return app


configure_logging(default_settings.log_level)
app = create_app()
