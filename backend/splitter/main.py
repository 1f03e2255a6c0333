import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .routers import exchange, recognition, sessions
from .services.sessions import get_session_repository
from .services.storage import close_redis_client

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_redis_client()


# Create FastAPI app
app = FastAPI(
    title="Receipt Splitter API",
    description="Backend API for splitting itemized receipts between people",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sessions.router)
app.include_router(recognition.router)
app.include_router(exchange.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Session routes answer malformed bodies with 400; the rest keep FastAPI's 422."""
    if request.url.path.startswith(sessions.router.prefix):
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid data format", "errors": jsonable_errors(exc)},
        )
    return await request_validation_exception_handler(request, exc)


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint, including storage liveness."""
    storage_ok = await get_session_repository().health_check()
    return {
        "status": "healthy" if storage_ok else "degraded",
        "service": "receipt-splitter-api",
        "storage": "up" if storage_ok else "down",
    }


@app.get("/")
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Receipt Splitter API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
