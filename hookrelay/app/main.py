"""FastAPI application — the main entrypoint for HookRelay."""

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from loguru import logger

from hookrelay.app.config import Settings, settings

# ---------------------------------------------------------------------------
# Loguru setup: single source of truth for all logging.
# ---------------------------------------------------------------------------


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging → loguru so uvicorn/sqlalchemy logs flow through."""

    def emit(self, record: logging.LogRecord) -> None:
        # Map stdlib level to loguru level name
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno  # type: ignore[assignment]

        # Find the caller frame that originated the log call
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _setup_logging(config: Settings) -> None:
    """Configure loguru as the single logging backend."""
    # Remove default stderr handler
    logger.remove()

    # Console handler, colorized
    logger.add(
        sys.stderr,
        level=config.log_level.upper(),
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level:<7}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        colorize=True,
    )

    # File handler for post-mortem debugging
    if config.log_to_file:
        log_dir = config.data_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / "hookrelay.log"),
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {message}",
            rotation="10 MB",
            retention=3,
            encoding="utf-8",
        )

    # Intercept all stdlib logging → loguru
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    # Quieten noisy third-party loggers
    for noisy in ("websockets", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


_setup_logging(settings)

# ---------------------------------------------------------------------------
# Now import everything else (after logging is configured)
# ---------------------------------------------------------------------------

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from hookrelay.app.api.connections import router as connections_router  # noqa: E402
from hookrelay.app.api.secrets import router as secrets_router  # noqa: E402
from hookrelay.app.api.system import router as system_router  # noqa: E402
from hookrelay.app.api.webhook import router as webhook_router  # noqa: E402
from hookrelay.app.api.ws import router as ws_router  # noqa: E402
from hookrelay.app.container import RelayServices  # noqa: E402
from hookrelay.app.errors import AdmissionDenied, AdmissionError, CryptoError  # noqa: E402

VERSION = "2.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    services: RelayServices = app.state.services
    await services.startup()
    logger.info(
        "HookRelay ready — webhook: {} | websocket: {}",
        services.settings.webhook_url,
        services.settings.ws_url,
    )
    yield
    # Shutdown
    logger.info("HookRelay shutting down...")
    await services.shutdown()


def create_app(config: Settings | None = None) -> FastAPI:
    """Build the ASGI app with its own set of relay services."""
    config = config or settings

    app = FastAPI(
        title="HookRelay",
        description="Webhook-to-WebSocket relay with Ed25519 callback validation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = RelayServices.build(config)

    # Browsers reject allow_origins=["*"] together with credentials
    allow_all = "*" in config.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Exception handlers ---

    @app.exception_handler(AdmissionDenied)
    async def _admission_denied_handler(request: Request, exc: AdmissionDenied) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(AdmissionError)
    async def _admission_error_handler(request: Request, exc: AdmissionError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc), "reason": exc.reason})

    @app.exception_handler(CryptoError)
    async def _crypto_error_handler(request: Request, exc: CryptoError) -> JSONResponse:
        logger.error("Signature generation failed on {} {}", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Signature generation failed"})

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch unhandled exceptions and return a clean JSON 500 instead of a stack trace."""
        logger.exception("Unhandled exception on {} {}", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Include routers
    app.include_router(webhook_router, prefix="/api")
    app.include_router(secrets_router, prefix="/api")
    app.include_router(connections_router, prefix="/api")
    app.include_router(system_router, prefix="/api")
    app.include_router(ws_router)  # /ws/{secret} (no /api prefix)

    # --- Banner and health check ---

    @app.get("/api")
    async def banner() -> dict:
        services: RelayServices = app.state.services
        return {
            "name": "HookRelay",
            "status": "running",
            "version": VERSION,
            "config": {
                "signature_validation": services.router.signature_validation,
                "max_connections": services.registry.policy.max_connections_per_secret,
            },
        }

    @app.get("/health")
    async def health() -> dict:
        """Health check with live connection counters."""
        services: RelayServices = app.state.services
        return {
            "status": "healthy",
            "connections": {
                "active": services.manager.active_count,
                **services.manager.stats.to_dict(),
            },
            "heartbeat": services.heartbeat.running,
        }

    return app


app = create_app()
