"""Cancellation token shared by every job worker of a run."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal.

    Once cancelled, running jobs are terminated and no new job is started
    in the current or any later stage. Cancelling twice is a no-op.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        """True once cancel() has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """Why the run was cancelled."""
        return self._reason

    def cancel(self, reason: str = "cancellation requested") -> None:
        """Trigger cancellation. Must be called from the event loop thread."""
        if self._event.is_set():
            return
        self._reason = reason
        logger.warning(f"Pipeline cancelled: {reason}")
        self._event.set()

    async def wait(self) -> None:
        """Block until cancellation is triggered."""
        await self._event.wait()
