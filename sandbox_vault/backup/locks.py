"""
Per-sandbox advisory locks.

Backup creation, catalog mutation and restore for one sandbox id are
serialized; different sandbox ids proceed independently. Locks are
re-entrant per task so an engine holding a sandbox lock can call into
the catalog, which takes the same lock.
"""

import asyncio
from typing import Dict, Optional


class SandboxLock:
    """An asyncio lock that the owning task may acquire more than once."""

    def __init__(self, sandbox_id: str):
        self.sandbox_id = sandbox_id
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._depth = 0

    async def acquire(self) -> None:
        task = asyncio.current_task()
        if self._owner is task and task is not None:
            self._depth += 1
            return
        await self._lock.acquire()
        self._owner = task
        self._depth = 1

    def release(self) -> None:
        if self._owner is not asyncio.current_task():
            raise RuntimeError(f"Lock for {self.sandbox_id} released by a task that does not own it")
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()

    async def __aenter__(self) -> "SandboxLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class SandboxLockRegistry:
    """Hands out one ``SandboxLock`` per sandbox id."""

    def __init__(self):
        self._locks: Dict[str, SandboxLock] = {}

    def lock_for(self, sandbox_id: str) -> SandboxLock:
        lock = self._locks.get(sandbox_id)
        if lock is None:
            lock = SandboxLock(sandbox_id)
            self._locks[sandbox_id] = lock
        return lock

    def is_locked(self, sandbox_id: str) -> bool:
        lock = self._locks.get(sandbox_id)
        return lock is not None and lock.locked()
