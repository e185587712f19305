"""
LedgerLink FastAPI application.

Run locally:
    uvicorn ledgerlink.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ledgerlink.api.routes import connections, health, webhooks_stripe
from ledgerlink.credentials.encryption import validate_vault_configured
from ledgerlink.credentials.redaction import setup_credential_logging
from ledgerlink.database.session import init_db
from ledgerlink.platform.errors import ErrorHandlerMiddleware

logger = logging.getLogger(__name__)


def create_app(initialize_database: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        initialize_database: Create missing tables on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_credential_logging()
        if not validate_vault_configured():
            logger.warning("ENCRYPTION_KEY is not configured; connection endpoints will fail")
        if initialize_database:
            init_db()
        yield

    app = FastAPI(title="LedgerLink", version="0.1.0", lifespan=lifespan)
    app.add_middleware(ErrorHandlerMiddleware)

    app.include_router(health.router)
    app.include_router(connections.router)
    app.include_router(webhooks_stripe.router)

    return app


app = create_app()
