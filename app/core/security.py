import jwt

from app.core.config import settings
from app.core.exceptions import UnauthorizedError


def decode_access_token(token: str) -> str:
    """Return the user id carried by a valid access token."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise UnauthorizedError("Invalid or expired token")

    if payload.get("type") != "access":
        raise UnauthorizedError("Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token payload")
    return str(user_id)
