import hmac
from fastapi import Header, HTTPException, WebSocket
from spin_bridge.config import settings


def token_matches(token: str | None) -> bool:
    if not settings.bearer_token:
        return True
    if not token:
        return False
    return hmac.compare_digest(token, settings.bearer_token)


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not token_matches(token):
        raise HTTPException(status_code=401, detail="Unauthorized")


def websocket_authorized(websocket: WebSocket) -> bool:
    """
    Token from the Authorization header, or the ?token= query parameter.
    """
    authorization = websocket.headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return token_matches(authorization.split(" ", 1)[1].strip())
    return token_matches(websocket.query_params.get("token"))
