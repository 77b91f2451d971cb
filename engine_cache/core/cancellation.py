"""
Cooperative cancellation token shared between a caller and a running operation.
"""

import asyncio


class CancelToken:
    """
    A one-shot cancellation signal.

    Operations poll ``cancelled`` between units of work, or ``await wait()`` to
    race the signal against other awaitables.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        """Waits until the token is cancelled."""
        await self._event.wait()
