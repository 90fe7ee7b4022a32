import asyncio
from enum import Enum
from typing import Optional


class CancelReason(str, Enum):
    CALLER = "caller"
    TIMEOUT = "timeout"


class CancellationSignal:
    """A one-shot cancellation flag that remembers why it fired.

    Callers share one signal across a whole batch to abort it; the execution
    service derives a per-check signal and fires it with `CancelReason.TIMEOUT`
    when the check's timer elapses.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[CancelReason] = None

    def cancel(self, reason: CancelReason = CancelReason.CALLER) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> CancelReason:
        await self._event.wait()
        return self.reason
