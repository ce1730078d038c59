from .base import RemoteStore, SupportsDatabaseChanges
from .http_store import HttpRecordStore

__all__ = ["HttpRecordStore", "RemoteStore", "SupportsDatabaseChanges"]
