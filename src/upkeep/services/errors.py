"""
Update pipeline error taxonomy

Every error raised by the update services derives from UpdateError so the
API layer can map the whole family to HTTP responses in one place.
"""
from typing import Optional


class UpdateError(Exception):
    """Base exception for update errors"""

    pass


class UpdateConflictError(UpdateError):
    """Raised when an update pipeline is already running"""

    pass


class ReleaseNotFoundError(UpdateError):
    """Raised when a requested version is not in the manifest"""

    pass


class AttemptNotFoundError(UpdateError):
    """Raised when an update attempt record does not exist"""

    pass


class ValidationError(UpdateError):
    """Raised when a request is rejected before any I/O"""

    pass


class InvalidTransitionError(UpdateError):
    """Raised when an attempt status change would violate the state machine"""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move update attempt from {current} to {target}")


class ManifestError(UpdateError):
    """Raised when the release manifest cannot be fetched or parsed"""

    pass


class DownloadError(UpdateError):
    """Raised when a release artifact cannot be downloaded"""

    pass


class IntegrityError(DownloadError):
    """Raised when a downloaded artifact does not match its declared checksum"""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch: expected {expected}, got {actual}")


class ProcessFailedError(UpdateError):
    """Raised when an external command exits non-zero"""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)


class ProcessTimeoutError(ProcessFailedError):
    """Raised when an external command exceeds its timeout"""

    pass


class ApplyError(UpdateError):
    """Raised when the release cannot be laid over the live tree"""

    pass


class MigrationError(UpdateError):
    """Raised when schema migrations fail"""

    pass


class SchemaValidationError(UpdateError):
    """Raised when the migrated schema does not validate"""

    pass


class SnapshotError(UpdateError):
    """Raised when a snapshot cannot be created, verified or restored"""

    pass


class BackupNotFoundError(SnapshotError):
    """Raised when a backup archive cannot be found"""

    pass


class RollbackError(UpdateError):
    """Raised when rollback fails - requires manual intervention"""

    pass
