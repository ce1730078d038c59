from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from habitsync.models import RemoteRecord


class SyncError(RuntimeError):
    """Base class for every error the sync engine records as `last_error`."""

    code = "sync_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)


class AccountUnavailableError(SyncError):
    code = "account_unavailable"


class LocalStoreError(SyncError):
    code = "local_store_error"


class RemoteError(SyncError):
    code = "remote_error"


class RemoteTransientError(RemoteError):
    """Network unavailable, service unavailable or zone busy. Retried by RetryPolicy."""

    code = "remote_transient"


class RemoteFatalError(RemoteError):
    code = "remote_fatal"


class TokenExpiredError(RemoteError):
    code = "token_expired"


class RemoteConflictError(RemoteError):
    """The remote copy changed since the client's last known state.

    `server_record` is the authoritative copy; callers apply it instead of retrying.
    """

    code = "remote_conflict"

    def __init__(self, server_record: "RemoteRecord", message: Optional[str] = None):
        super().__init__(message or f"remote_conflict: {server_record.record_id}")
        self.server_record = server_record


class UploadFailedError(SyncError):
    code = "upload_failed"

    def __init__(self, failures: list[dict], summary: Optional[dict] = None):
        super().__init__(f"upload_failed: {len(failures)} entity(ies)")
        self.failures = failures
        self.summary = summary or {}
