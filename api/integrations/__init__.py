"""
Integration layer.

Keeps the agency's shared Google connection alive and routes every
outbound provider call through one resilient client:

- core/tokens.py: TokenManager (refresh, persist outcome, classify failures)
- core/client.py: ResilientClient (401 refresh-and-resend, transient backoff)
- core/google_client.py: Google Business Profile (reviews, local posts)
- core/brightlocal_client.py: BrightLocal (locations, citation tracker)
"""

from .core.tokens import TokenManager, get_valid_access_token
from .core.client import ResilientClient
from .core.errors import (
    IntegrationError,
    NotConnectedError,
    ReconnectRequiredError,
    TransientIntegrationError,
)
from .core.types import IntegrationProvider, IntegrationStatus

__all__ = [
    "TokenManager",
    "get_valid_access_token",
    "ResilientClient",
    "IntegrationError",
    "NotConnectedError",
    "ReconnectRequiredError",
    "TransientIntegrationError",
    "IntegrationProvider",
    "IntegrationStatus",
]
