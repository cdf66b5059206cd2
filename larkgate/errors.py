"""Failure taxonomy for collaborator calls."""


class GatewayError(Exception):
    """Base class for recoverable collaborator failures."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BackendError(GatewayError):
    """Language-model, image or transcription backend failed."""


class MediaError(GatewayError):
    """File fetch, download or transcode failed."""


class AuthError(GatewayError):
    """Access credential could not be obtained."""


class DeliveryError(GatewayError):
    """Outbound reply could not be delivered."""
