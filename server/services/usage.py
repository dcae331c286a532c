"""Execution usage tracking (billing hook).

Recording is fire-and-forget: the executor schedules it as a task and never
waits on or sees its failures.
"""

import asyncio
from collections import Counter
from typing import Dict, Optional, Set

from core.logging import get_logger

logger = get_logger(__name__)


class UsageTracker:
    """Counts finished runs per organization and workflow."""

    def __init__(self):
        self.counts: Counter = Counter()
        self._tasks: Set[asyncio.Task] = set()

    async def record_execution(self, org_id: str, workflow_id: str, success: bool) -> None:
        self.counts[(org_id, workflow_id, success)] += 1
        logger.debug("Recorded workflow execution", org_id=org_id,
                     workflow_id=workflow_id, success=success)

    def schedule(self, org_id: str, workflow_id: str, success: bool) -> Optional[asyncio.Task]:
        """Schedule ``record_execution`` without waiting for it."""
        try:
            task = asyncio.get_running_loop().create_task(
                self.record_execution(org_id, workflow_id, success))
        except RuntimeError:
            logger.warning("No running loop, usage not recorded", org_id=org_id,
                           workflow_id=workflow_id)
            return None
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Usage tracking failed", error=str(exc))

    async def drain(self) -> None:
        """Wait for scheduled recordings (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def totals(self, org_id: str) -> Dict[str, int]:
        successful = sum(n for (org, _, ok), n in self.counts.items() if org == org_id and ok)
        failed = sum(n for (org, _, ok), n in self.counts.items() if org == org_id and not ok)
        return {"successful": successful, "failed": failed, "total": successful + failed}
