"""Route service calls from any worker to the single owner worker.

Each worker runs its own :class:`DebugBundleService`; only the owner keeps
process state. A worker may live on its own event loop (typically one loop
per thread), in which case calls cross loops with
:func:`asyncio.run_coroutine_threadsafe`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from .config import LiveConfig
from .metadata import KeyValueStore
from .service import SERVICE_WORKER, DebugBundleService

LOGGER = logging.getLogger("debug_bundle.workers")

T = TypeVar("T")


class ServiceGroup:
    """One :class:`DebugBundleService` per worker, addressed by worker id."""

    def __init__(self, owner: int = SERVICE_WORKER) -> None:
        self.owner = owner
        self._services: Dict[int, DebugBundleService] = {}
        self._loops: Dict[int, Optional[asyncio.AbstractEventLoop]] = {}

    @classmethod
    def create(
        cls,
        workers: int,
        kvstore: KeyValueStore,
        config: LiveConfig,
        owner: int = SERVICE_WORKER,
    ) -> "ServiceGroup":
        """Build a group of *workers* services sharing a store and config, all on the caller's loop."""
        if not 0 <= owner < workers:
            raise ValueError(f"owner worker {owner} outside of 0..{workers - 1}")
        group = cls(owner=owner)
        for worker_id in range(workers):
            group.add(worker_id, kvstore, config)
        return group

    def add(
        self,
        worker_id: int,
        kvstore: KeyValueStore,
        config: LiveConfig,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> DebugBundleService:
        if worker_id in self._services:
            raise ValueError(f"worker {worker_id} already registered")
        service = DebugBundleService(kvstore, config, worker_id=worker_id, group=self)
        self._services[worker_id] = service
        self._loops[worker_id] = loop
        return service

    def local(self, worker_id: int) -> DebugBundleService:
        return self._services[worker_id]

    @property
    def owner_service(self) -> DebugBundleService:
        return self._services[self.owner]

    def __len__(self) -> int:
        return len(self._services)

    async def invoke_on(
        self,
        worker_id: int,
        fn: Callable[[DebugBundleService], Awaitable[T]],
    ) -> T:
        """Run ``fn(service)`` against *worker_id*'s service on that worker's loop."""
        service = self._services[worker_id]
        target_loop = self._loops.get(worker_id)
        if target_loop is None or target_loop is asyncio.get_running_loop():
            return await fn(service)

        async def _call() -> T:
            return await fn(service)

        LOGGER.debug("Forwarding call to worker %s", worker_id)
        future = asyncio.run_coroutine_threadsafe(_call(), target_loop)
        return await asyncio.wrap_future(future)

    async def start(self) -> None:
        for worker_id in self._services:
            await self.invoke_on(worker_id, lambda service: service.start())

    async def stop(self) -> None:
        """Stop every non-owner worker first, then the owner."""
        for worker_id in self._services:
            if worker_id != self.owner:
                await self.invoke_on(worker_id, lambda service: service.stop())
        await self.invoke_on(self.owner, lambda service: service.stop())


__all__ = ["ServiceGroup"]
