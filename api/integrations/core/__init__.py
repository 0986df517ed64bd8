"""Core integration infrastructure."""

from .brightlocal_client import BrightLocalClient, get_brightlocal_client
from .client import ResilientClient
from .credentials import CredentialStore, IntegrationCredential
from .encryption import TokenCipher, get_token_cipher
from .errors import (
    CREDENTIAL_ERRORS,
    AlreadyInProgress,
    IntegrationError,
    NotConnectedError,
    ProviderRequestError,
    ReconnectRequiredError,
    StructuralError,
    TransientIntegrationError,
)
from .google_client import GoogleBusinessClient, get_google_client
from .tokens import TokenManager, get_token_manager
from .types import (
    IntegrationProvider,
    IntegrationStatus,
    QueueStatus,
    RunOutcome,
    RunStatus,
)

__all__ = [
    "BrightLocalClient",
    "get_brightlocal_client",
    "ResilientClient",
    "CredentialStore",
    "IntegrationCredential",
    "TokenCipher",
    "get_token_cipher",
    "CREDENTIAL_ERRORS",
    "AlreadyInProgress",
    "IntegrationError",
    "NotConnectedError",
    "ProviderRequestError",
    "ReconnectRequiredError",
    "StructuralError",
    "TransientIntegrationError",
    "GoogleBusinessClient",
    "get_google_client",
    "TokenManager",
    "get_token_manager",
    "IntegrationProvider",
    "IntegrationStatus",
    "QueueStatus",
    "RunOutcome",
    "RunStatus",
]
