"""Cancellation token threaded explicitly through retrieval and generation calls."""

import asyncio


class QueryCancelledError(Exception):
    """Raised when work is abandoned because its cancel token fired."""


class CancelToken:
    """Cooperative cancellation flag for one query.

    The token is created by whoever owns the query (a QuerySession or a
    transport adapter) and passed down into every call that may take time.
    Long-running loops check `cancelled` between steps; awaiting `wait()`
    resolves as soon as the token is cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise QueryCancelledError if the token has been cancelled."""
        if self._event.is_set():
            raise QueryCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


def is_abort_error(error: BaseException, token: CancelToken | None = None) -> bool:
    """Tell a deliberate interruption apart from a real failure.

    Args:
        error (BaseException): The error raised by an upstream call.
        token (CancelToken | None): The query's token, if any.

    Returns:
        bool: True if the error was caused by cancellation.
    """
    if token is not None and token.cancelled:
        return True
    if isinstance(error, (QueryCancelledError, asyncio.CancelledError)):
        return True
    message = str(error).lower()
    return "abort" in message
