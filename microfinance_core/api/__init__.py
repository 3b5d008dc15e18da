"""
Microfinance Core API Application Factory
"""

from datetime import date
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .system import MicrofinanceSystem, get_system
from .calculations import router as calculations_router
from .journal import router as journal_router
from .references import router as references_router
from ..config import MicrofinanceConfig, get_config
from ..repository import LedgerRepository
from .. import __version__


def create_app(
    repository: Optional[LedgerRepository] = None,
    config: Optional[MicrofinanceConfig] = None,
    clock: Optional[Callable[[], date]] = None
) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Microfinance Core API",
        description="Loan calculations and double-entry ledger posting",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = MicrofinanceSystem(repository, config, clock)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(calculations_router, tags=["Calculations"])
    app.include_router(journal_router, tags=["Ledger"])
    app.include_router(references_router, tags=["References"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microfinance_core_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "microfinance_core.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )


__all__ = ["create_app", "run_server", "MicrofinanceSystem", "get_system"]
