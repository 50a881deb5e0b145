from fastapi import Header, HTTPException, Request, WebSocket

from shared.helper.HelperConfig import HelperConfig
from shared.models.search import DEFAULT_USER_ID, USER_ID_PATTERN


def _expected_api_key(helper_config: HelperConfig) -> str:
    # empty means the API is open
    return helper_config.get_string_val("APP_API_KEY", default="")


async def verify_api_key(request: Request, x_api_key: str | None = Header(default=None)) -> None:
    """Verify the X-Api-Key header against the configured API key.

    Does nothing when APP_API_KEY is not set.

    Args:
        request (Request): The FastAPI request object (provides app.state).
        x_api_key (str | None): The value of the X-Api-Key header.

    Raises:
        HTTPException: 401 if the key is missing or does not match.
    """
    expected_key = _expected_api_key(request.app.state.helper_config)
    if expected_key and x_api_key != expected_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def is_websocket_authorized(websocket: WebSocket) -> bool:
    """Check a WebSocket handshake. The key may come as X-Api-Key header or apiKey query parameter."""
    expected_key = _expected_api_key(websocket.app.state.helper_config)
    if not expected_key:
        return True
    provided = websocket.headers.get("x-api-key") or websocket.query_params.get("apiKey")
    return provided == expected_key


def parse_user_id(raw: str | None) -> str:
    """Validate a user id. Empty means the shared public space.

    Raises:
        ValueError: If the id does not match ^[a-zA-Z0-9_-]{3,128}$.
    """
    value = (raw or "").strip()
    if not value:
        return DEFAULT_USER_ID
    if not USER_ID_PATTERN.match(value):
        raise ValueError("Invalid user id")
    return value


async def get_user_id(x_nexus_user_id: str | None = Header(default=None)) -> str:
    """Resolve the requesting user from the X-Nexus-User-Id header.

    Raises:
        HTTPException: 400 if the header holds a malformed id.
    """
    try:
        return parse_user_id(x_nexus_user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
