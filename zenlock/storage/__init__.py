"""
Storage layer for ZenLock.

SQLite persistence for usage sessions and per-app limits.
"""
