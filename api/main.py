"""FastAPI application entry point"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Setup logging
from billing.logging_config import setup_logging
setup_logging()

load_dotenv()

from api.dependencies import error_response
from billing.clients.invoicing_client import InvoicingClient
from billing.clients.legacy_client import LegacyBackendClient
from billing.config import settings
from billing.models.database import close_db, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and upstream clients on startup, close clients on shutdown"""
    await init_db()
    app.state.invoicing_client = InvoicingClient()
    app.state.legacy_client = LegacyBackendClient()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.ENVIRONMENT})")

    yield

    await app.state.invoicing_client.aclose()
    await app.state.legacy_client.aclose()
    await close_db()
    logger.info("Upstream clients and database engine closed")


app = FastAPI(
    title=settings.APP_NAME,
    description="Invoice sync, enrichment and batch actions across the invoicing service and the legacy backend",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed query parameters get the same {ok, error} shape as every other failure"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("query", "body"))
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "invalid request")
    logger.warning(f"Rejected {request.method} {request.url.path}: {message}")
    return error_response(message, 400)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "ok": True,
        "message": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"ok": True, "status": "healthy"}


# Import routes
from api.routes import invoices, jobs, batch
app.include_router(invoices.router, tags=["invoices"])
app.include_router(jobs.router, tags=["jobs"])
app.include_router(batch.router, tags=["batch"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
