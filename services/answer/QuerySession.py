import asyncio
from contextlib import aclosing
from typing import Awaitable, Callable

from services.answer.AnswerService import AnswerService
from shared.helper.cancel_helper import CancelToken, is_abort_error
from shared.helper.HelperConfig import HelperConfig
from shared.models.events import QueryEvent
from shared.models.search import SearchRequest

EmitCallback = Callable[[QueryEvent], Awaitable[None]]


class QuerySession:
    """Holds the single active query of one client connection.

    Starting a new query cancels the previous one first (token and task), so
    a superseded query never emits another event.
    """

    def __init__(self, helper_config: HelperConfig, answer_service: AnswerService) -> None:
        self.logging = helper_config.get_logger()
        self._answer_service = answer_service
        self._task: asyncio.Task | None = None
        self._token: CancelToken | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, request: SearchRequest, owner_id: str, emit: EmitCallback) -> asyncio.Task:
        """Cancel the active query, then run a new one in the background.

        Args:
            request (SearchRequest): The validated query.
            owner_id (str): The requesting user.
            emit (EmitCallback): Coroutine that delivers one event to the client.

        Returns:
            asyncio.Task: The task running the new query.
        """
        await self.cancel(reason="superseded")
        token = CancelToken()
        self._token = token
        self._task = asyncio.create_task(self._run(request, owner_id, token, emit))
        return self._task

    async def _run(self, request: SearchRequest, owner_id: str, token: CancelToken, emit: EmitCallback) -> None:
        try:
            async with aclosing(self._answer_service.run_query(request, owner_id, token)) as events:
                async for event in events:
                    if token.cancelled:
                        break
                    await emit(event)
        except Exception as e:
            if is_abort_error(e, token):
                return
            # the client went away mid-stream
            self.logging.warning("Could not deliver query events for owner %s: %s", owner_id, e)
            token.cancel(reason="delivery failed")

    async def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the active query, if any, and wait until it has stopped."""
        token, task = self._token, self._task
        self._token, self._task = None, None
        if token is not None:
            token.cancel(reason=reason)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def wait(self) -> None:
        """Wait for the active query to finish on its own."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def close(self) -> None:
        await self.cancel(reason="connection closed")
