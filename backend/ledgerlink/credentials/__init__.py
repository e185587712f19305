"""
Provider credential lifecycle: encryption at rest, storage, and refresh.
"""

from ledgerlink.credentials.encryption import (
    TokenVault,
    get_token_vault,
    reset_token_vault,
)
from ledgerlink.credentials.errors import (
    ConnectionNotFoundError,
    ConnectionPausedError,
    DecryptionFailedError,
    ProviderRefreshError,
    ReauthorizationRequiredError,
    VaultConfigurationError,
)
from ledgerlink.credentials.providers import (
    OAuthProviderAdapter,
    TokenPair,
    get_provider_adapter,
)
from ledgerlink.credentials.refresh import (
    RefreshCoordinator,
    RefreshOutcome,
    RefreshOutcomeStatus,
)
from ledgerlink.credentials.status import ConnectionStatusView, compute_status
from ledgerlink.credentials.store import ConnectionStore, ConnectionStatusProjection

__all__ = [
    "TokenVault",
    "get_token_vault",
    "reset_token_vault",
    "ConnectionNotFoundError",
    "ConnectionPausedError",
    "DecryptionFailedError",
    "ProviderRefreshError",
    "ReauthorizationRequiredError",
    "VaultConfigurationError",
    "OAuthProviderAdapter",
    "TokenPair",
    "get_provider_adapter",
    "RefreshCoordinator",
    "RefreshOutcome",
    "RefreshOutcomeStatus",
    "ConnectionStatusView",
    "compute_status",
    "ConnectionStore",
    "ConnectionStatusProjection",
]
