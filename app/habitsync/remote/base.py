from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from habitsync.models import DatabaseChanges, RemoteRecord, ZoneChanges


class RemoteStore(Protocol):
    """Authoritative multi-device record service.

    Implementations raise `RemoteTransientError`, `RemoteConflictError`,
    `TokenExpiredError` or `RemoteFatalError` from `habitsync.errors`.
    """

    def account_available(self) -> bool: ...

    def ensure_zone(self, zone: str) -> None: ...

    def save(self, record: RemoteRecord) -> RemoteRecord: ...

    def query_all(self, record_type: str, zone: str) -> list[RemoteRecord]: ...

    def fetch_zone_changes(self, zone: str, token: Optional[str]) -> ZoneChanges: ...

    def current_token(self, zone: str) -> Optional[str]: ...


@runtime_checkable
class SupportsDatabaseChanges(Protocol):
    """Optional capability: report which zones changed since a database-level token.

    Stores without it, or returning None, have every configured zone fetched
    on each attempt.
    """

    def fetch_database_changes(self, token: Optional[str]) -> Optional[DatabaseChanges]: ...
