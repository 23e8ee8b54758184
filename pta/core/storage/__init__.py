"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Auctions (settlement lock and checkpoint)
- Bids (append, then status transitions)
- Settlement results
"""

from pta.core.storage.sqlite_adapter import SQLiteAdapter
from pta.core.storage.storage_manager import StorageManager

__all__ = ["SQLiteAdapter", "StorageManager"]
