"""Authentication service: JWT token management.

Identities are owned by the platform's account service; this service only
trusts the ``sub`` and ``role`` claims of a signed token.
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from order_broadcast.app.config import get_settings

settings = get_settings()


def create_access_token(actor_id: str, role: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload = {"sub": actor_id, "role": role, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
