# src/playback_bff/maintenance.py

import asyncio
import contextlib
import logging
import typing

from .exceptions import SessionPersistenceError
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)


async def sweep_forever(registry: SessionRegistry, retention_seconds: float, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        registry.sweep(retention_seconds)


async def persist_forever(registry: SessionRegistry, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await registry.persist_async()
        except (OSError, SessionPersistenceError) as e:
            logger.error("Periodic session persistence failed: %s", e)


class MaintenanceTasks:
    """Owns the background sweep/persist tasks started with the application."""

    def __init__(self):
        self._tasks: typing.List[asyncio.Task] = []

    def start(self, registry: SessionRegistry, retention_seconds: float, sweep_interval_seconds: float,
              persist_interval_seconds: float) -> None:
        self._tasks.append(asyncio.create_task(
            sweep_forever(registry, retention_seconds, sweep_interval_seconds),
            name="session-sweep",
        ))
        if registry.persistence is not None:
            self._tasks.append(asyncio.create_task(
                persist_forever(registry, persist_interval_seconds),
                name="session-persist",
            ))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
