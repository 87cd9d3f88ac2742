"""Shutdown tracking for in-flight operations and background tasks.

A :class:`Gate` counts everything that must finish before the service can
stop: caller operations hold it for their duration and detached tasks are
spawned through it. Once :meth:`Gate.close` is called no new holders are
admitted and the close waits until the count drains to zero.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Coroutine, Iterator, Optional, Set, TypeVar

LOGGER = logging.getLogger("debug_bundle.gate")

T = TypeVar("T")


class GateClosedError(RuntimeError):
    """Raised when entering a gate that is closing or closed."""


class Gate:
    def __init__(self, name: str = "gate") -> None:
        self._name = name
        self._count = 0
        self._closed = False
        self._drained: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return self._count

    def enter(self) -> None:
        if self._closed:
            raise GateClosedError(f"{self._name} is closed")
        self._count += 1

    def leave(self) -> None:
        self._count -= 1
        if self._count == 0 and self._drained is not None:
            self._drained.set()

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.enter()
        try:
            yield
        finally:
            self.leave()

    def spawn(self, coro: Coroutine[Any, Any, T]) -> "asyncio.Task[T]":
        """Run *coro* as a detached task that keeps the gate open until it finishes."""
        try:
            self.enter()
        except GateClosedError:
            coro.close()
            raise
        task = asyncio.create_task(self._run(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Reject new holders and wait for current ones to leave."""
        if self._closed:
            raise GateClosedError(f"{self._name} already closed")
        self._closed = True
        if self._count == 0:
            return
        LOGGER.debug("Waiting for %d holder(s) of %s", self._count, self._name)
        self._drained = asyncio.Event()
        await self._drained.wait()

    async def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        try:
            return await coro
        finally:
            self.leave()


__all__ = ["Gate", "GateClosedError"]
