from fastapi import APIRouter, Depends, Request, WebSocket, status
from fastapi.responses import StreamingResponse

from server.adapters.SSEAdapter import SSE_HEADERS, SSE_MEDIA_TYPE
from server.dependencies.auth import get_user_id, is_websocket_authorized, verify_api_key
from shared.models.search import AnswerResponse, SearchRequest

router = APIRouter(prefix="/api", tags=["query"])
ws_router = APIRouter(tags=["query"])


@router.post("/search")
async def search(
    request: Request,
    body: SearchRequest,
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> AnswerResponse:
    """Answer a question about the user's documents in one response.

    Args:
        request (Request): FastAPI request (provides app.state.answer_service).
        body (SearchRequest): JSON body with query, topK, category, documentId and model.
        user_id (str): Requesting user from the X-Nexus-User-Id header.
        _ (None): Auth dependency result (unused).

    Returns:
        AnswerResponse: The generated answer and the matched documents.
    """
    answer_service = request.app.state.answer_service
    return await answer_service.do_answer(body, user_id)


@router.post("/search-stream")
async def search_stream(
    request: Request,
    body: SearchRequest,
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> StreamingResponse:
    """Answer a question as a Server-Sent Events stream.

    Frames carry JSON objects tagged matches | chunk | info | error | done.
    """
    sse_adapter = request.app.state.sse_adapter
    return StreamingResponse(
        sse_adapter.stream(body, user_id, is_disconnected=request.is_disconnected),
        media_type=SSE_MEDIA_TYPE,
        headers=SSE_HEADERS,
    )


@ws_router.websocket("/ws")
async def search_socket(websocket: WebSocket) -> None:
    """Persistent search connection, see WebSocketAdapter for the message protocol."""
    if not is_websocket_authorized(websocket):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.app.state.websocket_adapter.handle(websocket)
