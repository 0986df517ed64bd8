"""
Integration error taxonomy.

Every failure the integration layer surfaces derives from IntegrationError
and carries a machine-readable code so routes and jobs can decide whether an
operator has to act (reconnect, fix data) or the next run will simply retry.

- NotConnectedError: no credential row / never connected
- ReconnectRequiredError: permanent credential failure, needs human OAuth re-grant
- TransientIntegrationError: network / rate-limit failure after retries
- ProviderRequestError: provider answered with a non-retryable error response
- StructuralError: one entity is missing data required for the call
- AlreadyInProgress: informational, a run already exists for the entity
"""

from typing import Optional


class IntegrationError(Exception):
    """Base class for integration failures."""

    code = "integration_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotConnectedError(IntegrationError):
    code = "not_connected"


class ReconnectRequiredError(IntegrationError):
    code = "reconnect_required"


class TransientIntegrationError(IntegrationError):
    code = "transient"


class ProviderRequestError(IntegrationError):
    """Provider returned a response the caller cannot use."""

    code = "provider_error"

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StructuralError(IntegrationError):
    """Missing required input on one entity. Needs a data fix, not a retry."""

    code = "structural"


class AlreadyInProgress(IntegrationError):
    """A run is already active for this entity. Not a failure."""

    code = "already_in_progress"


# Credential failures stop a batch: retrying other entries cannot succeed.
CREDENTIAL_ERRORS = (NotConnectedError, ReconnectRequiredError)
