"""Cancellation token shared by every async operation of an observing session.

Each continuation checks the token after it resumes, so a response that
arrives after teardown is discarded instead of being applied.
"""

import asyncio
import contextlib


class CancellationToken:
    """A one-shot cancellation flag with a cancellable sleep.

    Usage:
        >>> token = CancellationToken()
        >>> if await token.sleep(3.0):
        ...     ...  # still live, do the next tick
        >>> token.cancel()
        >>> token.cancelled
        True
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first.

        Returns:
            True if the full delay elapsed, False if the token was
            cancelled before or during the wait.
        """
        if self.cancelled:
            return False
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        return not self.cancelled
