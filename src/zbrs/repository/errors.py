"""Error taxonomy for the repository pipeline."""

from __future__ import annotations

from typing import Any


class ZBRSError(Exception):
    """Base error carrying a machine-readable code."""

    def __init__(self, message: str, code: str, details: Any = None):
        self.code = code
        self.details = details
        super().__init__(message)


class NetworkError(ZBRSError):
    """A fetch failed: unreachable host, bad status, timeout, oversize or bad JSON."""

    def __init__(self, message: str, url: str, details: Any = None):
        self.url = url
        super().__init__(message, "NETWORK_ERROR", details)


class IntegrityError(ZBRSError):
    """Downloaded content does not match its declared checksum."""

    def __init__(self, message: str, file_path: str, details: Any = None):
        self.file_path = file_path
        super().__init__(message, "INTEGRITY_ERROR", details)


class ManifestKindError(ZBRSError):
    """Manifest matches neither the parent nor the translation shape."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, "UNKNOWN_MANIFEST_TYPE", details)


class NotInitializedError(RuntimeError):
    """A component was used before its initialization step.

    These are programmer errors and are never converted into import issues.
    """


class ServiceNotInitializedError(NotInitializedError):
    """RepositoryService used before initialize()."""

    def __init__(self) -> None:
        super().__init__(
            "Repository service not initialized. Call initialize() first."
        )
