import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from arq import create_pool
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from redis.exceptions import RedisError

from . import __version__
from . import models  # noqa: F401 - registers tables on Base
from .authz import StaffAction, authorize, claims_from_admin_key
from .config import ADMIN_API_KEY, FRONTEND_URL, QUEUE_METRICS_INTERVAL, QUEUE_NAME
from .database import Base, engine
from .errors import BookingError, TokenError
from .services.queue_monitor import ArqQueueBackend, QueueMonitor
from .worker import get_redis_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

QUEUE_POOL_TIMEOUT = 20.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    app.state.queue_pool = None
    try:
        app.state.queue_pool = await asyncio.wait_for(
            create_pool(get_redis_settings(), default_queue_name=QUEUE_NAME),
            timeout=QUEUE_POOL_TIMEOUT,
        )
        logger.info("Redis connection established")
    except (RedisError, OSError, asyncio.TimeoutError) as e:
        logger.warning(f"Redis connection failed - queue health will report errors: {e}")

    metrics_task = asyncio.create_task(
        refresh_queue_metrics(lambda: build_queue_monitor(app.state.queue_pool), QUEUE_METRICS_INTERVAL)
    )

    yield

    metrics_task.cancel()
    if app.state.queue_pool is not None:
        await app.state.queue_pool.close()
    logger.info("Application shutting down...")


app = FastAPI(title="Fieldbook API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus scrape endpoint
app.mount("/metrics", make_asgi_app())


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    """Business rule violations become 4xx responses with a safe message"""
    if isinstance(exc, TokenError):
        # Never tell the link holder which token check failed
        logger.warning(f"🔒 Token rejected on {request.url.path}: {exc.code}")
    else:
        logger.warning(f"⚠️ {exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict())


class _DisconnectedBackend:
    """Stands in for the arq pool when redis was unreachable at startup"""

    async def _unavailable(self) -> list:
        raise ConnectionError("Queue connection not initialised")

    get_waiting = get_active = get_completed = get_failed = _unavailable


def build_queue_monitor(pool) -> QueueMonitor:
    if pool is None:
        return QueueMonitor(_DisconnectedBackend())
    return QueueMonitor(ArqQueueBackend(pool, QUEUE_NAME))


def get_queue_monitor(request: Request) -> QueueMonitor:
    return build_queue_monitor(getattr(request.app.state, "queue_pool", None))


async def refresh_queue_metrics(monitor_factory, interval: float):
    """Keep the Prometheus queue gauge current until cancelled"""
    while True:
        await monitor_factory().update_metrics()
        await asyncio.sleep(interval)


@app.get("/")
def root():
    return {"name": "Fieldbook API", "version": __version__}


@app.get("/health")
def health_check():
    """Liveness probe"""
    return {"status": "healthy"}


@app.get("/health/queue")
async def queue_health_check(
    x_admin_key: Optional[str] = Header(default=None),
    monitor: QueueMonitor = Depends(get_queue_monitor),
):
    """Queue health; operator details only for callers holding the admin key"""
    health = await monitor.get_health()
    decision = authorize(
        claims_from_admin_key(x_admin_key, ADMIN_API_KEY), StaffAction.VIEW_QUEUE_DETAILS
    )
    body = health if decision.allowed else QueueMonitor.public_view(health)
    status_code = 503 if health["status"] == "error" else 200
    return JSONResponse(status_code=status_code, content=body)
