"""In-process shared/exclusive lock keyed by repository id.

Read-only restic queries (snapshots, ls) take a shared lock; anything that
mutates the repository or may conflict with a mutation (backup, forget,
check, repair, restore, snapshot deletion) takes an exclusive lock.

Requests are granted in arrival order: a queued exclusive request also holds
back shared requests that arrive after it. State lives only in this process.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Dict, List, Optional

from backend.core.errors import LockUnavailableError


logger = logging.getLogger(__name__)

SHARED = "shared"
EXCLUSIVE = "exclusive"


@dataclass
class _Holder:
    lock_id: int
    mode: str
    operation: str
    acquired_at: float


@dataclass
class _Waiter:
    mode: str
    operation: str
    future: asyncio.Future


@dataclass
class _RepositoryLockState:
    shared: Dict[int, _Holder] = field(default_factory=dict)
    exclusive: Optional[_Holder] = None
    waiters: Deque[_Waiter] = field(default_factory=deque)

    def is_idle(self) -> bool:
        return not self.shared and self.exclusive is None and not self.waiters


@dataclass(frozen=True)
class LockInfo:
    repository_id: str
    mode: str
    holders: List[str]
    waiting: int


class LockRelease:
    """Release capability returned by the mutex. Calling it more than once is a no-op."""

    def __init__(self, mutex: "RepositoryMutex", repository_id: str, lock_id: int, operation: str):
        self._mutex = mutex
        self._repository_id = repository_id
        self._lock_id = lock_id
        self._operation = operation
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __call__(self) -> None:
        if self._released:
            logger.warning(
                "Lock %s for repository %s (%s) released twice", self._lock_id, self._repository_id, self._operation
            )
            return
        self._released = True
        self._mutex._release(self._repository_id, self._lock_id)


class RepositoryMutex:
    """Reader/writer lock registry for restic repositories."""

    def __init__(self) -> None:
        self._locks: Dict[str, _RepositoryLockState] = {}
        self._ids = itertools.count(1)

    def _state(self, repository_id: str) -> _RepositoryLockState:
        state = self._locks.get(repository_id)
        if state is None:
            state = _RepositoryLockState()
            self._locks[repository_id] = state
        return state

    def _can_grant(self, state: _RepositoryLockState, mode: str) -> bool:
        if mode == SHARED:
            return state.exclusive is None
        return state.exclusive is None and not state.shared

    def _grant(self, state: _RepositoryLockState, mode: str, operation: str) -> int:
        holder = _Holder(lock_id=next(self._ids), mode=mode, operation=operation, acquired_at=time.monotonic())
        if mode == SHARED:
            state.shared[holder.lock_id] = holder
        else:
            state.exclusive = holder
        return holder.lock_id

    async def _acquire(self, repository_id: str, mode: str, operation: str, wait: bool) -> LockRelease:
        state = self._state(repository_id)

        if not state.waiters and self._can_grant(state, mode):
            lock_id = self._grant(state, mode, operation)
            logger.debug("Acquired %s lock on repository %s for %s", mode, repository_id, operation)
            return LockRelease(self, repository_id, lock_id, operation)

        if not wait:
            self._cleanup(repository_id)
            raise LockUnavailableError(repository_id, mode)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        waiter = _Waiter(mode=mode, operation=operation, future=future)
        state.waiters.append(waiter)
        logger.debug(
            "Waiting for %s lock on repository %s for %s (%d queued)",
            mode,
            repository_id,
            operation,
            len(state.waiters),
        )

        try:
            lock_id = await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                self._release(repository_id, future.result())
            else:
                try:
                    state.waiters.remove(waiter)
                except ValueError:
                    pass
                self._process_queue(repository_id)
            raise

        logger.debug("Acquired %s lock on repository %s for %s", mode, repository_id, operation)
        return LockRelease(self, repository_id, lock_id, operation)

    async def acquire_shared(self, repository_id: str, operation: str, *, wait: bool = True) -> LockRelease:
        """Acquire a shared lock.

        Args:
            repository_id: Repository id.
            operation: Tag describing the holder (for diagnostics).
            wait: When False raise `LockUnavailableError` instead of queueing.

        Returns:
            LockRelease: Call it exactly once to release the lock.
        """

        return await self._acquire(repository_id, SHARED, operation, wait)

    async def acquire_exclusive(self, repository_id: str, operation: str, *, wait: bool = True) -> LockRelease:
        """Acquire an exclusive lock. See `acquire_shared`."""

        return await self._acquire(repository_id, EXCLUSIVE, operation, wait)

    @asynccontextmanager
    async def shared(self, repository_id: str, operation: str, *, wait: bool = True) -> AsyncIterator[None]:
        release = await self.acquire_shared(repository_id, operation, wait=wait)
        try:
            yield
        finally:
            release()

    @asynccontextmanager
    async def exclusive(self, repository_id: str, operation: str, *, wait: bool = True) -> AsyncIterator[None]:
        release = await self.acquire_exclusive(repository_id, operation, wait=wait)
        try:
            yield
        finally:
            release()

    def _release(self, repository_id: str, lock_id: int) -> None:
        state = self._locks.get(repository_id)
        if state is None:
            return

        holder = state.shared.pop(lock_id, None)
        if holder is None and state.exclusive is not None and state.exclusive.lock_id == lock_id:
            holder = state.exclusive
            state.exclusive = None

        if holder is not None:
            held_for = time.monotonic() - holder.acquired_at
            logger.debug(
                "Released %s lock on repository %s for %s after %.1fs",
                holder.mode,
                repository_id,
                holder.operation,
                held_for,
            )

        self._process_queue(repository_id)

    def _process_queue(self, repository_id: str) -> None:
        state = self._locks.get(repository_id)
        if state is None:
            return

        while state.waiters:
            waiter = state.waiters[0]
            if waiter.future.done():
                state.waiters.popleft()
                continue
            if not self._can_grant(state, waiter.mode):
                break
            state.waiters.popleft()
            waiter.future.set_result(self._grant(state, waiter.mode, waiter.operation))
            if waiter.mode == EXCLUSIVE:
                break

        self._cleanup(repository_id)

    def _cleanup(self, repository_id: str) -> None:
        state = self._locks.get(repository_id)
        if state is not None and state.is_idle():
            del self._locks[repository_id]

    def is_locked(self, repository_id: str) -> bool:
        """Return True when any lock (shared or exclusive) is currently held. Never blocks."""

        state = self._locks.get(repository_id)
        return state is not None and (state.exclusive is not None or bool(state.shared))

    def get_lock_info(self, repository_id: str) -> Optional[LockInfo]:
        state = self._locks.get(repository_id)
        if state is None:
            return None
        if state.exclusive is not None:
            return LockInfo(repository_id, EXCLUSIVE, [state.exclusive.operation], len(state.waiters))
        if state.shared:
            return LockInfo(repository_id, SHARED, [h.operation for h in state.shared.values()], len(state.waiters))
        return LockInfo(repository_id, "none", [], len(state.waiters))
