"""Shared async engine pool for database handlers.

Engines are keyed by connection string and reused across runs. Engines idle
longer than the TTL are disposed on the next acquire.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _PooledEngine:
    engine: AsyncEngine
    last_used: float


class EnginePool:
    """Connection-string keyed cache of SQLAlchemy async engines."""

    def __init__(self, idle_ttl: float = 300.0):
        self.idle_ttl = idle_ttl
        self._engines: Dict[str, _PooledEngine] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, connection_string: str) -> AsyncEngine:
        async with self._lock:
            await self._evict_idle()
            entry = self._engines.get(connection_string)
            if entry is None:
                engine = create_async_engine(connection_string, future=True)
                entry = _PooledEngine(engine=engine, last_used=time.monotonic())
                self._engines[connection_string] = entry
                logger.debug("Created pooled engine", dialect=engine.dialect.name)
            entry.last_used = time.monotonic()
            return entry.engine

    async def _evict_idle(self) -> None:
        now = time.monotonic()
        expired = [key for key, entry in self._engines.items()
                   if now - entry.last_used > self.idle_ttl]
        for key in expired:
            entry = self._engines.pop(key)
            await entry.engine.dispose()
            logger.debug("Disposed idle engine", dialect=entry.engine.dialect.name)

    async def dispose_all(self) -> None:
        async with self._lock:
            for entry in self._engines.values():
                await entry.engine.dispose()
            count = len(self._engines)
            self._engines.clear()
        if count:
            logger.info("Engine pool closed", engines=count)

    def __len__(self) -> int:
        return len(self._engines)


_default_pool: Optional[EnginePool] = None


def get_engine_pool() -> EnginePool:
    """Process-wide pool used by database handlers."""
    global _default_pool
    if _default_pool is None:
        from core.config import Settings
        _default_pool = EnginePool(idle_ttl=Settings().connection_idle_ttl)
    return _default_pool


def set_engine_pool(pool: Optional[EnginePool]) -> None:
    global _default_pool
    _default_pool = pool
