"""
Downstream dispatcher
Queues resolved employees for out-of-core compliance analysis (Dramatiq)

Best effort: callers log and swallow DownstreamDispatchError. A failed
enqueue is never retried within the run; the next run dispatches again.
"""
import asyncio
import logging
from typing import Optional

from app.core.config import settings
from app.services.sync.errors import DownstreamDispatchError

logger = logging.getLogger(__name__)


class DownstreamDispatcher:
    """
    Sends `analyze_employee_task` for an employee.

    Args:
        enabled: Defaults to settings.enable_downstream_analysis
    """

    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = settings.enable_downstream_analysis if enabled is None else enabled

    async def enqueue(self, employee_id: str, reason: str) -> bool:
        """
        Enqueue analysis for one employee.

        Returns:
            True if a message was sent, False when dispatch is disabled

        Raises:
            DownstreamDispatchError: If the broker rejects the message
        """
        if not self.enabled:
            return False

        from app.services.jobs.tasks import analyze_employee_task

        try:
            # broker I/O is blocking
            await asyncio.to_thread(analyze_employee_task.send, employee_id, reason)
        except Exception as e:
            raise DownstreamDispatchError(f"enqueue failed for employee {employee_id}: {e}", unit=employee_id) from e

        logger.info(f"📨 Queued compliance analysis for employee {employee_id} ({reason})")
        return True
