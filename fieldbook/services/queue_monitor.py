"""
Queue Monitor
Counts jobs in the arq queue and classifies queue health.

Every backend call runs under its own timeout. Failures are reported as a
structured error object, never raised, so a health endpoint can always
answer even when redis is unreachable.
"""

import asyncio
import logging
from typing import Protocol

from arq.connections import ArqRedis
from arq.constants import in_progress_key_prefix
from prometheus_client import Gauge

from ..config import (
    QUEUE_BACKLOG_THRESHOLD,
    QUEUE_CALL_TIMEOUT,
    QUEUE_MEMORY_CAPACITY_BYTES,
    QUEUE_NAME,
    QUEUE_USAGE_CEILING_PERCENT,
)
from ..errors import QueueUnavailable

logger = logging.getLogger(__name__)

STATES = ("waiting", "active", "completed", "failed")

# Rough per-job footprint in redis; the memory figure is an estimate only
AVERAGE_JOB_SIZE_BYTES = {state: 150 for state in STATES}

STATS_ERROR_MESSAGE = "Unable to retrieve queue statistics"

REMINDERS_WAITING = Gauge(
    "arq_reminders_waiting",
    "Jobs waiting in the reminder queue (0 while the queue is unreachable)",
)


class QueueBackend(Protocol):
    """Query-only view of a job queue"""

    async def get_waiting(self) -> list: ...

    async def get_active(self) -> list: ...

    async def get_completed(self) -> list: ...

    async def get_failed(self) -> list: ...


class ArqQueueBackend:
    """QueueBackend over an arq redis pool"""

    def __init__(self, pool: ArqRedis, queue_name: str = QUEUE_NAME):
        self.pool = pool
        self.queue_name = queue_name

    async def get_waiting(self) -> list:
        return await self.pool.queued_jobs(queue_name=self.queue_name)

    async def get_active(self) -> list:
        return await self.pool.keys(f"{in_progress_key_prefix}*")

    async def get_completed(self) -> list:
        return [result for result in await self.pool.all_job_results() if result.success]

    async def get_failed(self) -> list:
        return [result for result in await self.pool.all_job_results() if not result.success]


class QueueMonitor:
    def __init__(
        self,
        backend: QueueBackend,
        timeout: float = QUEUE_CALL_TIMEOUT,
        backlog_threshold: int = QUEUE_BACKLOG_THRESHOLD,
        memory_capacity_bytes: int = QUEUE_MEMORY_CAPACITY_BYTES,
        usage_ceiling_percent: float = QUEUE_USAGE_CEILING_PERCENT,
        waiting_gauge: Gauge = REMINDERS_WAITING,
    ):
        self.backend = backend
        self.timeout = timeout
        self.backlog_threshold = backlog_threshold
        self.memory_capacity_bytes = memory_capacity_bytes
        self.usage_ceiling_percent = usage_ceiling_percent
        self.waiting_gauge = waiting_gauge

    async def _count(self, state: str) -> int:
        fetch = getattr(self.backend, f"get_{state}")
        try:
            jobs = await asyncio.wait_for(fetch(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise QueueUnavailable(
                STATS_ERROR_MESSAGE, TimeoutError(f"get_{state} timed out after {self.timeout}s")
            ) from e
        except Exception as e:
            raise QueueUnavailable(STATS_ERROR_MESSAGE, e) from e
        return len(jobs)

    async def get_stats(self) -> dict:
        """
        Job counts per state with an estimated memory footprint.

        Returns:
            {waiting, active, completed, failed, total, memoryUsage} or
            {error, details} when any backend call failed
        """
        try:
            counts = {state: await self._count(state) for state in STATES}
        except QueueUnavailable as e:
            logger.error(f"❌ Queue stats unavailable: {e.details}")
            return {"error": e.message, "details": e.details}

        memory = {state: counts[state] * AVERAGE_JOB_SIZE_BYTES[state] for state in STATES}
        memory["total"] = sum(memory.values())
        return {**counts, "total": sum(counts.values()), "memoryUsage": memory}

    async def update_metrics(self) -> dict:
        """Publish the waiting count; reset to 0 on error so the gauge never goes stale"""
        stats = await self.get_stats()
        self.waiting_gauge.set(0 if "error" in stats else stats["waiting"])
        return stats

    async def get_health(self) -> dict:
        """Classify the queue as healthy, degraded or error"""
        stats = await self.get_stats()
        if "error" in stats:
            return {"status": "error", "message": stats["error"], "details": stats["details"]}

        used = stats["memoryUsage"]["total"]
        usage_percent = self._usage_percent(used)
        backlog = stats["waiting"] + stats["active"]

        problems = []
        if backlog > self.backlog_threshold:
            problems.append(f"Backlog of {backlog} jobs exceeds threshold of {self.backlog_threshold}")
        if usage_percent > self.usage_ceiling_percent:
            problems.append(
                f"Estimated memory usage {usage_percent:.1f}% exceeds {self.usage_ceiling_percent:.0f}%"
            )

        health = {
            "status": "degraded" if problems else "healthy",
            "memoryUsage": {
                "used": used,
                "capacity": self.memory_capacity_bytes,
                "usagePercent": round(usage_percent, 2),
            },
        }
        if problems:
            health["message"] = "; ".join(problems)
            logger.warning(f"⚠️ Queue degraded: {health['message']}")
        return health

    def _usage_percent(self, used: int) -> float:
        if self.memory_capacity_bytes <= 0:
            return 100.0
        return max(0.0, min(100.0, used / self.memory_capacity_bytes * 100))

    @staticmethod
    def public_view(health: dict) -> dict:
        """Status only; operator details stay behind the admin key"""
        return {"status": health.get("status", "error")}
