"""
Sync -- two-way reconciliation of a local .env file and a vault record.

The diff and conflict steps are pure. The engine does the I/O: concurrent
fetch, backup, write-back, and the persisted state that makes a second
sync a no-op.
"""

from .backends import OnePasswordBackend, VaultBackend
from .engine import SyncEngine

__all__ = ["OnePasswordBackend", "SyncEngine", "VaultBackend"]
