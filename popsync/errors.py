"""Exception types shared across the mirror engine."""

from typing import Optional


class PopsyncError(Exception):
    """Base class for all mirror errors."""


class ConfigError(PopsyncError):
    """Raised when configuration is invalid or missing."""


class MalformedDocument(PopsyncError):
    """Raised when a local file cannot be split into metadata and body."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)


class MappingError(PopsyncError):
    """Raised when a mapping table itself is malformed."""


class MappingResolutionFailure(PopsyncError):
    """A wire path could not be resolved against a snapshot.

    Never raised out of extraction; instances are collected as warnings.
    """

    def __init__(self, property_name: str, path: str, reason: str):
        self.property_name = property_name
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to resolve {property_name} from {path}: {reason}")


class StructuralMismatch(PopsyncError):
    """A child's parent link or component disagrees with its expected epic."""


class FilesystemConflict(PopsyncError):
    """A path is occupied unexpectedly, or a required directory is missing."""


class TrackerError(PopsyncError):
    """Raised when the remote tracker cannot be read."""


class RemoteWriteFailure(TrackerError):
    """Raised when a write to the remote tracker fails."""

    def __init__(self, message: str, key: Optional[str] = None, status_code: Optional[int] = None):
        self.key = key
        self.status_code = status_code
        super().__init__(message)


class WorkspaceError(PopsyncError):
    """Raised when a workspace issue cannot be refined or promoted."""
