import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mir_backend.api.routes import notifications, repositories, webhooks
from mir_backend.core.config import get_settings
from mir_backend.core.errors import MirrorError, mirror_exception_handler, remote_exception_handler
from mir_backend.core.redis import close_redis
from mir_backend.ingestion.github_client import GitHubAPIError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

audit_logger = logging.getLogger("audit")
audit_handler = logging.StreamHandler()
audit_handler.setFormatter(logging.Formatter("%(message)s"))
audit_logger.handlers = [audit_handler]
audit_logger.propagate = False

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_redis()


app = FastAPI(
    title="IssueMirror API",
    description="Local mirror of GitHub issues, pull requests and CI with notifications",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(MirrorError, mirror_exception_handler)
app.add_exception_handler(GitHubAPIError, remote_exception_handler)

if settings.environment == "production" and not settings.cors_origins:
    raise ValueError("CORS_ORIGINS must be configured in production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(",") if settings.cors_origins else ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=86400,
)


@app.get("/health")
async def health_check():
    return {"status": "ok"}


app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(repositories.router, prefix="/repositories", tags=["repositories"])
app.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
