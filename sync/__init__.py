"""File synchronization between the agent's scratch space and a sandbox."""

from sync.file_sync import FileSyncBridge, SyncReport

__all__ = ["FileSyncBridge", "SyncReport"]
