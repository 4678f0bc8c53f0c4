"""Record persistence layer: SQLite database management and the typed record store."""

from tracker.data.database import RecordDatabase
from tracker.data.store import RecordStore

__all__ = ["RecordDatabase", "RecordStore"]
