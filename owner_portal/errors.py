from typing import Optional


class ConfigurationError(RuntimeError):
    """Raised when a property has no credential or mapping configured."""


class UpstreamError(RuntimeError):
    """Raised when the tax/invoicing platform rejects or fails a request."""

    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        self.operation = operation
        self.status_code = status_code
        if status_code is None:
            super().__init__(f"{operation} failed: {message}")
        else:
            super().__init__(f"HTTP {status_code} for {operation}: {message}")

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class NotificationError(RuntimeError):
    """Raised when the email provider rejects a message."""
