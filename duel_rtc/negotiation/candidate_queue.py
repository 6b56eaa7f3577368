"""Buffer for remote network candidates that arrive before the remote description."""

from collections import deque
from typing import Awaitable, Callable, Deque

from loguru import logger

from duel_rtc.exceptions import CandidateApplyFailed


class CandidateQueue:
    """FIFO of candidate blobs, drained exactly once per connection.

    Once ``drain_into`` has started, the queue refuses new entries: callers
    must apply late candidates directly.
    """

    def __init__(self):
        self._entries: Deque[dict] = deque()
        self.draining_started = False

    def __len__(self) -> int:
        return len(self._entries)

    def enqueue(self, candidate: dict) -> None:
        if self.draining_started:
            raise RuntimeError("Candidate queue already drained; apply candidates directly")
        self._entries.append(candidate)
        logger.debug(f"Queued remote candidate ({len(self._entries)} pending)")

    async def drain_into(self, apply_fn: Callable[[dict], Awaitable[None]]) -> int:
        """Apply every buffered candidate in arrival order.

        An entry is removed before it is applied; if ``apply_fn`` raises, that
        entry is dropped and draining continues with the next one.

        Args:
            apply_fn: Coroutine function applying one candidate.

        Returns:
            Number of candidates applied successfully.
        """
        self.draining_started = True
        applied = 0
        while self._entries:
            candidate = self._entries.popleft()
            try:
                await apply_fn(candidate)
            except Exception as e:
                logger.warning(f"{CandidateApplyFailed.__name__}: dropping queued candidate: {e}")
                continue
            applied += 1
        if applied:
            logger.debug(f"Applied {applied} queued candidate(s)")
        return applied

    def clear(self) -> None:
        self._entries.clear()
