"""Gateway exception hierarchy."""


class GatewayError(Exception):
    """Base exception for the z2api gateway."""


class RequestFormatError(GatewayError):
    """Raised when an inbound request cannot be turned into messages."""


class UpstreamError(GatewayError):
    """Represents a failed call to the upstream (transport, status or decode)."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def http_status(self) -> int:
        return self.status_code if self.status_code >= 400 else 502


class ImageUploadError(GatewayError):
    """Raised when an inline image cannot be uploaded to the upstream."""
