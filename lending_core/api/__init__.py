"""
Lending Core API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import LendingSystem, get_lending_system, create_access_token
from .products import router as products_router
from .customers import router as customers_router
from .loans import router as loans_router
from .. import __version__
from ..config import get_config
from ..errors import LendingError
from ..logging_config import setup_logging, get_logger

logger = get_logger("lending_core.api")


def create_app(system: Optional[LendingSystem] = None,
               auth_enabled: Optional[bool] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Pre-built lending system; built from configuration when omitted
        auth_enabled: Overrides the configured JWT authentication switch
    """
    config = system.config if system else get_config()
    setup_logging(config.log_level, log_format=config.log_format)

    app = FastAPI(
        title="Lending Core API",
        description="Loan origination, servicing and repayment engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.lending_system = system or LendingSystem(config=config)
    app.state.auth_enabled = config.auth_enabled if auth_enabled is None else auth_enabled

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # Include routers
    app.include_router(products_router, prefix="/products", tags=["Products"])
    app.include_router(customers_router, prefix="/customers", tags=["Customers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_core_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Lending Core API",
            "version": __version__,
            "description": "Loan origination, servicing and repayment engine",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "products": "/products",
                "customers": "/customers",
                "loans": "/loans"
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API server with uvicorn"""
    config = get_config()
    uvicorn.run(create_app(), host=host or config.api_host, port=port or config.api_port)


__all__ = ["create_app", "run_server", "LendingSystem", "get_lending_system", "create_access_token"]
