from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

JWT_ALG = "HS256"
TOKEN_TTL = timedelta(hours=24)
security = HTTPBearer()


class AuthError(Exception):
    pass


def create_token(user_id: str, secret: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "iat": now, "exp": now + TOKEN_TTL}
    return jwt.encode(payload, secret, algorithm=JWT_ALG)


def decode_token(token: str, secret: str) -> str:
    try:
        data = jwt.decode(token, secret, algorithms=[JWT_ALG])
    except jwt.PyJWTError as e:
        raise AuthError(f"invalid token: {e}") from e
    sub = data.get("sub")
    if not sub:
        raise AuthError("invalid token: missing subject")
    return sub


def check_login(user_id: str, token: Optional[str], secret: str, required: bool):
    """Raise AuthError unless ``token`` proves ``user_id`` (only enforced when required)."""
    if not required:
        return
    if not token:
        raise AuthError("token required")
    if decode_token(token, secret) != user_id:
        raise AuthError("token does not match userId")


def auth_required(
    request: Request, creds: HTTPAuthorizationCredentials = Depends(security)
) -> str:
    try:
        return decode_token(creds.credentials, request.app.state.settings.jwt_secret)
    except AuthError:
        raise HTTPException(status_code=401, detail="invalid token")
