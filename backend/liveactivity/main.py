"""Main FastAPI application for the Live Activity push server."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .errors import register_exception_handlers
from .routers import live_activity_router
from .schemas import ApiResponse
from .services.push_gateway import PushGateway, build_gateway
from .services.scheduler import ActivityLifecycleScheduler, ScheduleWindow
from .services.token_store import TokenStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "yangcheonlife-liveactivity"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    state = app.state
    logger.info(f"Starting {SERVICE_NAME} (tz={state.window.timezone})")

    # Missing push credentials abort startup before any traffic is served
    if state.gateway is None:
        state.gateway = build_gateway(settings)
    logger.info(f"Push gateway ready: {state.gateway.name}")

    await state.token_store.init()
    logger.info("Token store initialized")

    state.lifecycle_scheduler = ActivityLifecycleScheduler(
        store=state.token_store,
        gateway=state.gateway,
        window=state.window,
    )
    if state.start_scheduler:
        state.lifecycle_scheduler.start()

    yield

    # Shutdown
    state.lifecycle_scheduler.stop()
    await state.gateway.close()
    await state.token_store.close()
    logger.info("Shutdown complete")


def create_app(
    token_store: Optional[TokenStore] = None,
    gateway: Optional[PushGateway] = None,
    window: Optional[ScheduleWindow] = None,
    start_scheduler: Optional[bool] = None,
    control_api_key: Optional[str] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to the ones described by ``settings``; tests pass
    their own store, gateway and window.
    """
    app = FastAPI(
        title="YangcheonLife Live Activity Server",
        description="Schedules and sends Live Activity start/update/end pushes",
        version=VERSION,
        lifespan=lifespan,
    )

    app.state.token_store = token_store or TokenStore()
    app.state.gateway = gateway
    app.state.window = window or ScheduleWindow.from_settings(settings)
    app.state.start_scheduler = settings.scheduler_enabled if start_scheduler is None else start_scheduler
    app.state.control_api_key = control_api_key if control_api_key is not None else settings.control_api_key
    app.state.lifecycle_scheduler = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        client = request.client.host if request.client else "-"
        logger.info(
            f"{request.method} {request.url.path} ip={client} "
            f"bundleId={request.headers.get('x-bundle-id', '-')}"
        )
        return await call_next(request)

    register_exception_handlers(app)
    app.include_router(live_activity_router)

    # Health check endpoint
    @app.get("/health", response_model=ApiResponse)
    async def health_check():
        return ApiResponse(
            message="Live Activity server is running",
            data={
                "status": "OK",
                "timestamp": datetime.utcnow().isoformat(),
                "version": VERSION,
                "service": SERVICE_NAME,
            },
        )

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
