"""Progress tracking for batch action runs

Uses in-memory storage (guarded by an asyncio lock) so a caller polling
``GET /batch/{batch_id}`` sees each row's result as soon as it is recorded.
Finished batches are kept for ``BATCH_RETENTION_SECONDS`` and at most
``BATCH_MAX_FINISHED`` of them; running batches are never evicted.
"""

from typing import Dict, Any, Optional
from datetime import datetime, timezone
from enum import Enum
import asyncio
import logging
import time
import uuid

from billing.config import settings

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    """Lifecycle of a batch run"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BatchProgressTracker:
    """In-memory progress tracker for batch runs"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._progress: Dict[str, Dict[str, Any]] = {}
            cls._instance._lock = asyncio.Lock()
            cls._instance._finished: Dict[str, float] = {}
            cls._instance._clock = time.monotonic
            cls._instance.retention_seconds = settings.BATCH_RETENTION_SECONDS
            cls._instance.max_finished = settings.BATCH_MAX_FINISHED
        return cls._instance

    def _evict(self) -> None:
        """Drop expired finished batches, then the oldest beyond the cap (lock held)"""
        now = self._clock()
        finished = sorted(self._finished, key=self._finished.get)
        expired = [b for b in finished if now - self._finished[b] > self.retention_seconds]
        # Oldest first, so the expired ids are a prefix
        kept = finished[len(expired):]
        overflow = kept[:max(0, len(kept) - self.max_finished)]

        for batch_id in expired + overflow:
            self._progress.pop(batch_id, None)
            self._finished.pop(batch_id, None)
        if expired or overflow:
            logger.info(f"Evicted {len(expired) + len(overflow)} finished batches")

    async def create(self, total: int, batch_id: Optional[str] = None) -> str:
        """
        Register a new batch run

        Args:
            total: Number of rows in the batch
            batch_id: Optional explicit id (a random one is generated otherwise)

        Returns:
            The batch id
        """
        batch_id = batch_id or uuid.uuid4().hex
        async with self._lock:
            self._evict()
            self._progress[batch_id] = {
                "batch_id": batch_id,
                "status": BatchStatus.PENDING.value,
                "total": total,
                "processed": 0,
                "succeeded": 0,
                "failed": 0,
                "message": "",
                "created_at": _now(),
                "updated_at": _now(),
                "results": [],
            }
        return batch_id

    async def start(self, batch_id: str) -> None:
        async with self._lock:
            if batch_id not in self._progress:
                logger.warning(f"Start for unknown batch_id: {batch_id}")
                return
            self._progress[batch_id]["status"] = BatchStatus.RUNNING.value
            self._progress[batch_id]["started_at"] = _now()
            self._progress[batch_id]["updated_at"] = _now()

    async def record(self, batch_id: str, result: Dict[str, Any]) -> None:
        """
        Append one row outcome to the batch

        Args:
            batch_id: Batch id
            result: ``{id, action, ok, message}``
        """
        async with self._lock:
            if batch_id not in self._progress:
                logger.warning(f"Result for unknown batch_id: {batch_id}")
                return

            progress = self._progress[batch_id]
            progress["results"].append(result)
            progress["processed"] += 1
            if result.get("ok"):
                progress["succeeded"] += 1
            else:
                progress["failed"] += 1
            progress["updated_at"] = _now()

    async def complete(self, batch_id: str, message: str = "Batch complete") -> None:
        async with self._lock:
            if batch_id not in self._progress:
                logger.warning(f"Completion for unknown batch_id: {batch_id}")
                return
            self._progress[batch_id]["status"] = BatchStatus.COMPLETE.value
            self._progress[batch_id]["message"] = message
            self._progress[batch_id]["updated_at"] = _now()
            self._progress[batch_id]["completed_at"] = _now()
            self._finished[batch_id] = self._clock()

    async def error(self, batch_id: str, error_message: str) -> None:
        async with self._lock:
            if batch_id not in self._progress:
                logger.warning(f"Error for unknown batch_id: {batch_id}")
                return
            self._progress[batch_id]["status"] = BatchStatus.ERROR.value
            self._progress[batch_id]["message"] = error_message
            self._progress[batch_id]["updated_at"] = _now()
            self._finished[batch_id] = self._clock()

    async def get(self, batch_id: str) -> Optional[Dict[str, Any]]:
        """
        Snapshot of a batch run

        Returns:
            Progress dictionary (results copied) or None if not found
        """
        async with self._lock:
            self._evict()
            progress = self._progress.get(batch_id)
            if progress is None:
                return None
            return {**progress, "results": list(progress["results"])}

    async def clear(self, batch_id: str) -> None:
        async with self._lock:
            self._progress.pop(batch_id, None)
            self._finished.pop(batch_id, None)


# Global instance
batch_progress_tracker = BatchProgressTracker()
