from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn
from app.chat.api.route import chat_router
from app.chat.repository.chat_repository import ChatRepository
from app.chat.service.chat_service import ChatService
from app.chat.service.rate_limiter import IRateLimiter, RedisRateLimiter, SlidingWindowRateLimiter
from app.auth.service.identity_service import IdentityService
from app.core.config import settings
from app.core.logger import get_logger
from app.realtime.api.route import realtime_router
from app.realtime.gateway import RealtimeGateway
from pkg.db_util.postgres_conn import PostgresConnection
from pkg.db_util.types import PostgresConfig
from pkg.redis.client import RedisClient
from redis.exceptions import RedisError
from pkg.auth_token_client.client import TokenClient
from dotenv import load_dotenv
import asyncio
import sys

# Load .env so settings pick up values from your .env file
load_dotenv()

logger = get_logger("lex-connect-chat")


def _degraded(app: FastAPI, error_msg: str) -> None:
    app.state.logger = logger
    app.state.postgres_conn = None
    app.state.redis_client = None
    app.state.gateway = None
    app.state.chat_service = None
    app.state.startup_complete = False
    app.state.startup_error = error_msg


async def build_rate_limiter(redis_client: RedisClient | None) -> IRateLimiter:
    """Redis limiter when configured and reachable, in-process otherwise."""
    if redis_client is not None:
        try:
            reachable = await redis_client.ping()
        except RedisError:
            reachable = False
        if reachable:
            logger.info(f"Using Redis rate limiter at {settings.REDIS_HOST}:{settings.REDIS_PORT}")
            return RedisRateLimiter(
                redis_client,
                max_events=settings.MESSAGE_RATE_LIMIT,
                window_seconds=settings.MESSAGE_RATE_WINDOW_SECONDS,
                logger=logger,
            )
        logger.warning("Redis not reachable, falling back to in-process rate limiter")
    return SlidingWindowRateLimiter(
        max_events=settings.MESSAGE_RATE_LIMIT,
        window_seconds=settings.MESSAGE_RATE_WINDOW_SECONDS,
        logger=logger,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager - ensures startup completes before accepting requests"""
    logger.info(f"{settings.APP_NAME} starting up...")
    logger.info(f"Python: {sys.version}")
    logger.info(f"ENV={settings.ENV} PORT={settings.PORT}")

    required_env_vars = {
        "POSTGRES_HOST": settings.POSTGRES_HOST.strip(),
        "POSTGRES_USER": settings.POSTGRES_USER.strip(),
        "POSTGRES_PASSWORD": settings.POSTGRES_PASSWORD.strip(),
        "POSTGRES_DB": settings.POSTGRES_DB.strip(),
    }
    missing_vars = [key for key, value in required_env_vars.items() if not value]
    if missing_vars:
        error_msg = f"Missing required environment variables: {', '.join(missing_vars)}"
        logger.error(error_msg)
        logger.error("Application will start in degraded mode")
        _degraded(app, error_msg)
        yield
        return

    postgres_conn = None
    redis_client = None
    try:
        postgres_config = PostgresConfig.from_settings(
            settings,
            pool_timeout=30,  # Increase timeout for cloud deployments
            echo=settings.LOG_LEVEL.upper() == "DEBUG",
        )
        postgres_conn = PostgresConnection(postgres_config, logger)

        logger.info("Initializing database engine with retry logic...")
        try:
            await asyncio.wait_for(
                postgres_conn.get_engine(max_retries=5, initial_delay=2.0),
                timeout=60.0
            )
            logger.info("✓ Postgres engine initialized and cached during startup.")
        except asyncio.TimeoutError:
            logger.error("Database connection timed out after 60 seconds")
            raise ConnectionError("Database connection timeout - check network/credentials")

        logger.info("Tables needed: chat_rooms, chat_participants, chat_messages (see scripts/create_tables.py)")
        chat_repo = ChatRepository(postgres_conn.get_session, logger)

        if settings.RATE_LIMIT_BACKEND.lower() == "redis":
            redis_client = RedisClient(
                logger,
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                password=settings.REDIS_PASSWORD,
                ssl=settings.REDIS_SSL,
            )
        rate_limiter = await build_rate_limiter(redis_client)

        token_client = TokenClient(settings.JWT_SUPER_SECRET, settings.JWT_REFRESH_SECRET)
        identity_service = IdentityService(token_client, logger)

        gateway = RealtimeGateway(
            chat_repo,
            identity_service,
            rate_limiter,
            max_message_length=settings.MAX_MESSAGE_LENGTH,
            logger=get_logger("RealtimeGateway"),
        )
        chat_service = ChatService(
            chat_repo,
            notifier=gateway,
            logger=get_logger("ChatService"),
            history_page_size=settings.HISTORY_PAGE_SIZE,
            max_message_length=settings.MAX_MESSAGE_LENGTH,
        )

        # Expose on app.state for dependencies
        app.state.logger = logger
        app.state.postgres_conn = postgres_conn
        app.state.redis_client = redis_client
        app.state.chat_repo = chat_repo
        app.state.identity_service = identity_service
        app.state.gateway = gateway
        app.state.chat_service = chat_service
        app.state.startup_complete = True
        app.state.startup_error = None

        logger.info("✓ Startup complete - application is ready!")

    except Exception as e:
        logger.error(f"✗ Startup failed: {e}", exc_info=True)
        logger.error("Application will start in degraded mode - check logs above")
        _degraded(app, str(e))

    yield

    logger.info(f"{settings.APP_NAME} shutting down...")
    if redis_client is not None:
        await redis_client.close()
    if postgres_conn is not None:
        await postgres_conn.close_engine()


app = FastAPI(
    title=settings.APP_NAME,
    description="Realtime chat between citizens and lawyers",
    version="1.0.0",
    lifespan=lifespan
)


# Startup Check Middleware - ensures no requests processed before startup completes
class StartupCheckMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path in ["/health", "/", "/docs", "/openapi.json"]:
            return await call_next(request)

        if not getattr(request.app.state, "startup_complete", False):
            return JSONResponse(
                status_code=503,
                content={
                    "status": False,
                    "message": "Service is starting up. Please retry in a few seconds."
                }
            )

        startup_error = getattr(request.app.state, "startup_error", None)
        if startup_error:
            return JSONResponse(
                status_code=503,
                content={
                    "status": False,
                    "message": f"Service initialization failed: {startup_error}"
                }
            )

        return await call_next(request)


app.add_middleware(StartupCheckMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.CLIENT_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Convert HTTPException to standardized error format"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": False,
            "message": exc.detail
        },
        headers=exc.headers
    )


# Routers
app.include_router(chat_router)
app.include_router(realtime_router)


@app.get("/health")
async def health():
    """Health check that shows service status"""
    startup_complete = getattr(app.state, "startup_complete", False)
    startup_error = getattr(app.state, "startup_error", None)

    if not startup_complete:
        return JSONResponse(
            status_code=200,
            content={
                "status": "starting" if startup_error is None else "degraded",
                "service": "lex-connect-chat",
                "message": startup_error or "Application is still starting up...",
                "startup_complete": False
            }
        )

    checks = {
        "database": "✓ connected" if getattr(app.state, "postgres_conn", None) else "✗ not_initialized",
        "redis": "✓ connected" if getattr(app.state, "redis_client", None) else "- not_configured",
        "chat_service": "✓ ready" if getattr(app.state, "chat_service", None) else "✗ not_ready",
    }
    gateway = getattr(app.state, "gateway", None)
    checks["gateway"] = f"✓ {len(gateway.registry)} connections" if gateway else "✗ not_ready"

    all_healthy = all(not value.startswith("✗") for value in checks.values())
    return {
        "status": "ok" if all_healthy else "degraded",
        "service": "lex-connect-chat",
        "checks": checks,
        "startup_complete": True
    }


@app.get("/")
async def root():
    """Root endpoint - simple check that app is running"""
    return {
        "service": "lex-connect-chat",
        "version": "1.0.0",
        "status": "running",
        "health_check": "/health",
        "websocket": "/ws"
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
