from typing import Optional

from fastapi import Header, HTTPException
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def issue_access_token(user_id: int) -> str:
    """Sign a bearer token for ``user_id``. Used by tests and local tooling."""
    return _serializer().dumps({"u": user_id})


def verify_access_token(token: str) -> Optional[int]:
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.token_max_age_secs)
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or user_id < 1:
        return None
    return user_id


async def current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    user_id = verify_access_token(token.strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id
