from .db import get_conn, init_db
from .local_store import LocalStore
from .token_store import TokenStore

__all__ = ["LocalStore", "TokenStore", "get_conn", "init_db"]
