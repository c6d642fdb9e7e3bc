from .sqlite_backend import SqliteBackend

__all__ = ["SqliteBackend"]
