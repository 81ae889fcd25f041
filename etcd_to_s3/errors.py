"""Error taxonomy shared by the backup core."""

from __future__ import annotations

from pathlib import Path


class EtcdBackupError(RuntimeError):
    """Base class for backup and stats failures."""


class MalformedEndpoint(EtcdBackupError):
    """Raised when an endpoint URL is empty or has no usable scheme."""


class UnreachableEndpoint(EtcdBackupError):
    """Raised when an endpoint does not answer the version probe."""


class TransportConfigError(EtcdBackupError):
    """Raised when the URL scheme and the supplied TLS material disagree."""


class InvalidKey(EtcdBackupError):
    """Raised for keys that cannot be mapped onto the filesystem."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"invalid key {key!r}: {reason}")
        self.key = key
        self.reason = reason


class KeyspaceReadError(EtcdBackupError):
    """Raised when a request fails while walking a prefix."""

    def __init__(self, prefix: str, cause: object) -> None:
        super().__init__(f"failed to read keyspace under {prefix!r}: {cause}")
        self.prefix = prefix
        self.cause = cause


class WriteError(EtcdBackupError):
    """Raised when an entry cannot be written to the working tree."""

    def __init__(self, path: Path, cause: object) -> None:
        super().__init__(f"failed to write {path}: {cause}")
        self.path = path
        self.cause = cause


class PublishError(EtcdBackupError):
    """Raised when the archive upload fails."""

    def __init__(self, cause: str, detail: object = None) -> None:
        message = f"publish failed ({cause})"
        if detail is not None:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.cause = cause
        self.detail = detail


class OperationCancelled(EtcdBackupError):
    """Raised when the caller's cancellation event is set."""
