"""
Credit Engine API Application Factory
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import get_credit_system
from .cash import router as cash_router
from .credits import router as credits_router
from ..exceptions import (
    ConflictError, CreditEngineError, NotFoundError, PrivilegeError,
    TransientStorageError, ValidationError,
)
from ..logging_config import get_logger, log_action


logger = get_logger("credit_engine.api")

# Checked in order, subclasses first
_ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PrivilegeError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (TransientStorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(error: CreditEngineError) -> int:
    for error_class, code in _ERROR_STATUS:
        if isinstance(error, error_class):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the storage pool on startup and close it on shutdown"""
    system = get_credit_system()
    await system.start()
    logger.info("Credit engine started with %s storage", system.config.storage_type)

    yield

    await system.stop()
    logger.info("Credit engine storage closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Credit Engine API",
        description="Credit lifecycle and cash ledger synchronization for microlending",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CreditEngineError)
    async def handle_engine_error(request: Request, exc: CreditEngineError):
        code = status_for(exc)
        log_action(logger, "warning" if code < 500 else "error", str(exc),
                   action="http_error", resource=request.url.path,
                   extra={"status": code, "code": exc.to_dict()["code"]})
        return JSONResponse(status_code=code, content=exc.to_dict())

    # Include routers
    app.include_router(credits_router, prefix="/credits", tags=["Credits"])
    app.include_router(cash_router, prefix="/cash", tags=["Cash"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "credit_engine_api",
            "version": "1.0.0"
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Credit Engine API",
            "version": "1.0.0",
            "description": "Credit lifecycle and cash ledger synchronization",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "credits": "/credits",
                "cash": "/cash",
            }
        }

    return app
