import logfire

from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

from middleware.audit import AuditMiddleware
from middleware.error_handling import ErrorHandlingMiddleware
from middleware.rate_limiting import RateLimitMiddleware
from middleware.refresh_token import RefreshTokenMiddleware

from models.users import User
from models.security import RefreshToken, AuditLog, Counter

from routers import auth, users, health

from security.refresh_token import RefreshTokenService
from security.tokens import TokenService

from services.audit import AuditService, BeanieAuditService, LogfireAuditService
from services.rate_limit_store import InMemoryRateLimitStore, RateLimitStore, RedisRateLimitStore
from services.refresh_token_repository import (
    BeanieRefreshTokenRepository,
    InMemoryRefreshTokenRepository,
    RefreshTokenRepository,
)
from services.user_repository import BeanieUserRepository, InMemoryUserRepository, UserRepository

from utils.logger import configure_logging, instrument_libraries
from utils.settings import Settings


def create_app(
    settings: Optional[Settings] = None,
    user_repository: Optional[UserRepository] = None,
    refresh_token_repository: Optional[RefreshTokenRepository] = None,
    rate_limit_store: Optional[RateLimitStore] = None,
    audit_service: Optional[AuditService] = None,
    token_service: Optional[TokenService] = None,
) -> FastAPI:
    """Application factory.

    Collaborators that are not passed in are chosen from the settings: MongoDB
    backed repositories when a database connection string is configured, a Redis
    rate limit store when a Redis URL is configured, in-memory versions otherwise.
    """
    settings = settings or Settings.from_env()
    use_database = bool(settings.database_connection_string)

    if user_repository is None:
        user_repository = BeanieUserRepository() if use_database else InMemoryUserRepository()
    if refresh_token_repository is None:
        refresh_token_repository = (
            BeanieRefreshTokenRepository() if use_database else InMemoryRefreshTokenRepository()
        )
    if audit_service is None:
        audit_service = BeanieAuditService() if use_database else LogfireAuditService()

    redis_connection = None
    if rate_limit_store is None:
        if settings.redis_url:
            redis_connection = redis.asyncio.from_url(settings.redis_url, decode_responses=True)
            rate_limit_store = RedisRateLimitStore(redis_connection)
        else:
            rate_limit_store = InMemoryRateLimitStore()

    token_service = token_service or TokenService(settings.jwt)
    refresh_token_service = RefreshTokenService(
        token_service, refresh_token_repository, user_repository, settings.auth
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logfire.info("Starting Ikhtibar API...")

        client = None
        if use_database:
            # * Connect to MongoDB, reading datetimes back as UTC aware values
            client = AsyncIOMotorClient(settings.database_connection_string, tz_aware=True)
            await init_beanie(
                database=client[settings.database_name],
                document_models=[User, RefreshToken, AuditLog, Counter],
            )
            logfire.info("Database initialized successfully")

        yield

        logfire.info("Shutting down Ikhtibar API...")
        if client is not None:
            client.close()
        if redis_connection is not None:
            await redis_connection.aclose()
        logfire.info("Application shutdown complete")

    app = FastAPI(
        title="Ikhtibar API",
        description="Authentication, token refresh, rate limiting and auditing for the Ikhtibar assessment platform.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.token_service = token_service
    app.state.refresh_token_service = refresh_token_service
    app.state.user_repository = user_repository
    app.state.rate_limit_store = rate_limit_store
    app.state.audit_service = audit_service

    # Middleware added last runs first: error handling wraps auditing, which wraps
    # rate limiting, which wraps token refresh
    app.add_middleware(
        RefreshTokenMiddleware,
        token_service=token_service,
        refresh_token_service=refresh_token_service,
        settings=settings.auth,
    )
    app.add_middleware(
        RateLimitMiddleware,
        store=rate_limit_store,
        max_attempts=settings.auth.max_login_attempts,
        window_minutes=settings.auth.rate_limit_window_minutes,
        lockout_minutes=settings.auth.lockout_duration_minutes,
        protected_paths=settings.auth.rate_limited_paths,
        trust_proxy_headers=settings.auth.trust_proxy_headers,
        trusted_proxies=settings.auth.trusted_proxies,
    )
    app.add_middleware(AuditMiddleware, audit_service=audit_service)
    app.add_middleware(ErrorHandlingMiddleware, is_development=settings.is_development)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["New-Access-Token", "New-Refresh-Token", "Token-Expires-At", "Token-Refresh-Required"],
    )

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(users.router)

    if settings.logfire_token:
        instrument_libraries(app)

    return app


def build_default_app() -> FastAPI:
    """Create the application configured from the environment, used by uvicorn."""
    settings = Settings.from_env()
    configure_logging(settings.logfire_token, settings.environment)
    return create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:build_default_app", factory=True, host="0.0.0.0", port=8000)
