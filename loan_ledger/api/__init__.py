"""
Loan Ledger API Application Factory
"""

from typing import Dict, Optional, Type

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import LedgerSystem, get_ledger_system, set_ledger_system
from .loans import router as loans_router
from .payments import router as payments_router
from .audit import router as audit_router
from .. import __version__
from ..errors import (
    AllocationFailed, AlreadySettled, ConcurrencyConflict, InvalidAmount,
    InvalidTransition, LedgerError, LoanCancelled, NotFound, PermissionDenied,
    StorageUnavailable,
)
from ..logging_config import get_logger


logger = get_logger("loan_ledger.api")

ERROR_STATUS: Dict[Type[LedgerError], int] = {
    InvalidAmount: 422,          # includes OverPayment
    NotFound: 404,
    AlreadySettled: 409,
    LoanCancelled: 409,
    InvalidTransition: 409,
    ConcurrencyConflict: 409,
    PermissionDenied: 403,
    AllocationFailed: 503,
    StorageUnavailable: 503,
}


def status_for(error: LedgerError) -> int:
    """HTTP status for a ledger error, resolved through its class hierarchy"""
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Worker Loan Ledger API",
        description="Worker loan issuance and repayment ledger with a hash-chained audit trail",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    if system is not None:
        app.dependency_overrides[get_ledger_system] = lambda: system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=422,
            content={"error": "invalid_request", "message": str(exc), "details": {}}
        )

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(audit_router, prefix="/audit", tags=["Audit"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_ledger_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Worker Loan Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "payments": "/payments",
                "audit": "/audit",
            }
        }

    return app


# Create the app instance for uvicorn
app = create_app()
