"""Request-scoped service factories. Tests replace these via dependency_overrides."""

from typing import Dict

from fastapi import Depends
from sqlalchemy.orm import Session

from ledgerlink.billing.reconciler import WebhookReconciler
from ledgerlink.credentials.providers import OAuthProviderAdapter, default_adapters
from ledgerlink.credentials.refresh import RefreshCoordinator
from ledgerlink.credentials.store import ConnectionStore
from ledgerlink.database.session import get_db_session
from ledgerlink.models.connection import ConnectionProvider


def get_provider_adapters() -> Dict[ConnectionProvider, OAuthProviderAdapter]:
    return default_adapters()


def get_connection_store(db: Session = Depends(get_db_session)) -> ConnectionStore:
    return ConnectionStore(db)


def get_refresh_coordinator(
    db: Session = Depends(get_db_session),
    adapters: Dict[ConnectionProvider, OAuthProviderAdapter] = Depends(get_provider_adapters),
) -> RefreshCoordinator:
    return RefreshCoordinator(db, adapters=adapters)


def get_webhook_reconciler(db: Session = Depends(get_db_session)) -> WebhookReconciler:
    return WebhookReconciler(db)
