from .store import RunStore, SQLiteRunStore
