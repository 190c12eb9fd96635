"""
tfstacks/utils/terraform/init_cache.py

Remembers which stack subdirectories have already been initialized, and to
which version, during one tfstacks command, so that 'terraform init' is not
repeated for every action on the same stack.

The cache is keyed by stack name: a subdirectory can only be initialized
against one state file at a time, so asking for another version of the same
name simply misses the cache and re-initializes.
"""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel

from tfstacks.models.stack import Stack


class InitCacheEntry(BaseModel):
    """Init status of one stack subdirectory."""

    initialized: bool = False
    version: int = 0


class InitCache:
    """Per-command memo of initialized stack subdirectories."""

    def __init__(self) -> None:
        self._entries: Dict[str, InitCacheEntry] = {}

    def entry(self, name: str) -> Optional[InitCacheEntry]:
        return self._entries.get(name)

    def is_initialized(self, stack: Stack) -> bool:
        """True if the stack's subdirectory is initialized to this exact version."""
        entry = self._entries.get(stack.name)
        return entry is not None and entry.initialized and entry.version == stack.version

    def mark_initialized(self, stack: Stack) -> None:
        self._entries[stack.name] = InitCacheEntry(
            initialized=True, version=stack.version
        )
