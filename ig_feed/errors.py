from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration or required credentials are missing or invalid."""


class GraphAPIError(RuntimeError):
    """Raised when a Graph API request fails after retries."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(RuntimeError):
    """Raised when a file-backed store cannot be read or written."""
