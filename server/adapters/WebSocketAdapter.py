"""WebSocket transport for query events.

Protocol: the client sends text frames
{"type": "search", "query": ..., "topK"?, "category"?, "documentId"?, "model"?, "userId"?}
and receives one JSON text frame per query event. A new search cancels the
connection's previous one. Protocol-level pings are sent by the ASGI server.
"""

import asyncio
import json

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from pydantic import ValidationError

from server.dependencies.auth import parse_user_id
from services.answer.AnswerService import AnswerService
from services.answer.QuerySession import QuerySession
from shared.helper.HelperConfig import HelperConfig
from shared.models.events import ErrorEvent, QueryEvent, event_payload
from shared.models.search import DEFAULT_USER_ID, SearchMessage

ERROR_INVALID_JSON = "Invalid JSON message"
ERROR_UNKNOWN_TYPE = "Unknown message type"
ERROR_QUERY_REQUIRED = "query is required"
ERROR_INVALID_MESSAGE = "Invalid search message"

# longer category filters are ignored
CATEGORY_FILTER_MAX_CHARS = 80


class WebSocketConnection:
    """Serializes all sends of one socket and drops them once it is closed."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._lock = asyncio.Lock()

    async def send_event(self, event: QueryEvent) -> None:
        async with self._lock:
            if self.websocket.client_state != WebSocketState.CONNECTED:
                return
            await self.websocket.send_text(json.dumps(event_payload(event), ensure_ascii=False))

    async def send_error(self, message: str) -> None:
        await self.send_event(ErrorEvent(message=message))


class WebSocketAdapter:
    """Runs the receive loop of one WebSocket connection."""

    def __init__(self, helper_config: HelperConfig, answer_service: AnswerService) -> None:
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self._answer_service = answer_service

    @staticmethod
    def parse_message(raw: str) -> tuple[SearchMessage | None, str | None]:
        """Validate one incoming text frame.

        Returns:
            tuple[SearchMessage | None, str | None]: The search message, or the
                error text to send back.
        """
        try:
            data = json.loads(raw)
        except ValueError:
            return None, ERROR_INVALID_JSON
        if not isinstance(data, dict) or data.get("type") != "search":
            return None, ERROR_UNKNOWN_TYPE
        query = data.get("query")
        if not isinstance(query, str) or not query.strip():
            return None, ERROR_QUERY_REQUIRED
        category = data.get("category")
        if not isinstance(category, str) or len(category.strip()) > CATEGORY_FILTER_MAX_CHARS:
            data["category"] = None
        if not isinstance(data.get("topK"), (int, float)) or isinstance(data.get("topK"), bool):
            data.pop("topK", None)
        try:
            return SearchMessage.model_validate(data), None
        except ValidationError:
            return None, ERROR_INVALID_MESSAGE

    @staticmethod
    def resolve_user_id(message: SearchMessage) -> str:
        # malformed ids fall back to the public space
        try:
            return parse_user_id(message.user_id)
        except ValueError:
            return DEFAULT_USER_ID

    async def handle_message(self, session: QuerySession, connection: WebSocketConnection, raw: str) -> None:
        message, error = self.parse_message(raw)
        if error:
            await connection.send_error(error)
            return
        await session.start(message, self.resolve_user_id(message), connection.send_event)

    async def handle(self, websocket: WebSocket) -> None:
        """Accept the socket and serve searches until the client disconnects."""
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        session = QuerySession(self._helper_config, self._answer_service)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(session, connection, raw)
        except WebSocketDisconnect as e:
            self.logging.debug("WebSocket closed by client (code %s).", e.code)
        finally:
            await session.close()
