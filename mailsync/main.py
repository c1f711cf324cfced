import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailsync import __version__
from mailsync.api.v1 import accounts, messages, oauth
from mailsync.config import settings
from mailsync.exceptions import MailSyncError

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    logger.info("Starting up mail sync API (%s)", settings.ENVIRONMENT)
    yield
    # Shutdown
    logger.info("Shutting down...")


app = FastAPI(
    title="Mail Sync API",
    description="Mail ingestion, threading and sync for Gmail, Outlook and IMAP accounts",
    version=__version__,
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(oauth.router, prefix="/api/v1/oauth", tags=["oauth"])
app.include_router(accounts.router, prefix="/api/v1/accounts", tags=["accounts"])
app.include_router(messages.router, prefix="/api/v1/messages", tags=["messages"])


@app.exception_handler(MailSyncError)
async def mail_sync_error_handler(request: Request, exc: MailSyncError):
    logger.error("Unhandled %s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": __version__}


@app.get("/")
async def root():
    return {
        "message": "Mail Sync API",
        "version": __version__,
        "docs": "/docs"
    }
