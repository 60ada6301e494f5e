"""
Minibank API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import (
    BankError, ConfigurationError, ConflictError, HashingError,
    InvalidInputError, NotFoundError, PermissionDeniedError,
    StorageError, UnauthorizedError
)
from ..logging_config import get_logger
from .auth import router as auth_router
from .accounts import router as accounts_router
from .transfers import router as transfers_router


logger = get_logger("minibank.api")

# Checked in order; subclasses before their bases
ERROR_STATUS_CODES = (
    (PermissionDeniedError, 403),
    (UnauthorizedError, 401),
    (InvalidInputError, 400),
    (HashingError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StorageError, 500),
    (ConfigurationError, 500),
)


def status_code_for(error: BankError) -> int:
    """Map a domain error to an HTTP status code"""
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 400


async def handle_bank_error(request: Request, exc: BankError) -> JSONResponse:
    status_code = status_code_for(exc)
    headers = None
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        detail = "internal server error"
    else:
        detail = str(exc)
    if status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Minibank API",
        description="Accounts, token authentication and atomic transfers",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_exception_handler(BankError, handle_bank_error)

    # Include routers
    app.include_router(auth_router, prefix="/login", tags=["Auth"])
    app.include_router(accounts_router, prefix="/account", tags=["Accounts"])
    app.include_router(transfers_router, prefix="/transfer", tags=["Transfers"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "minibank_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Minibank API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "login": "/login",
                "accounts": "/account",
                "transfer": "/transfer",
            }
        }

    return app


app = create_app()
