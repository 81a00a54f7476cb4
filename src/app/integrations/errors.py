"""Exception taxonomy for integration, sync and webhook operations.

Services raise these; the API layer translates them into the
``{"success": false, "error": ...}`` envelope.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for integration-layer failures."""


class IntegrationNotConfiguredError(IntegrationError):
    """Integration row, base URL or credential is missing. Not retried."""


class UpstreamAPIError(IntegrationError):
    """External provider answered with a non-2xx status or was unreachable.

    Args:
        provider: Provider key (e.g. "zoho").
        status_code: HTTP status returned, or None for transport failures.
        body: Response body text (or transport error message).
    """

    def __init__(self, provider: str, status_code: int | None, body: str) -> None:
        self.provider = provider
        self.status_code = status_code
        self.body = body
        if status_code is None:
            message = f"{provider} request failed: {body}"
        else:
            message = f"{provider} API error {status_code}: {body}"
        super().__init__(message)


class RecordNotFoundError(IntegrationError):
    """A record addressed by id does not exist."""


class SignatureVerificationError(IntegrationError):
    """Inbound payload signature is missing or does not verify."""
