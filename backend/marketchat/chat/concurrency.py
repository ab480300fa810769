"""Concurrency helpers shared by the chat components.

``KeyedLock`` serializes blocking work per key (chat id, idempotency key) while
letting different keys proceed in parallel. ``run_blocking`` moves a
blocking store call off the event loop.
"""
import asyncio
import functools
import threading
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, TypeVar

T = TypeVar("T")


class KeyedLock:
    """A lazily-created ``threading.Lock`` per key.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the registry does not grow with the number of chats ever seen.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


async def run_blocking(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking callable in the default executor."""
    return await asyncio.get_running_loop().run_in_executor(
        None, functools.partial(fn, *args, **kwargs)
    )


class AsyncKeyedLock:
    """Per-key ``asyncio.Lock`` for work that must stay ordered across awaits.

    Locks are scoped to the running event loop as well as the key, since an
    ``asyncio.Lock`` cannot be shared between loops.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Any, List[Any]] = {}  # (loop id, key) -> [lock, refcount]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        slot = (id(asyncio.get_running_loop()), key)
        with self._guard:
            entry = self._locks.get(slot)
            if entry is None:
                entry = [asyncio.Lock(), 0]
                self._locks[slot] = entry
            entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(slot, None)
