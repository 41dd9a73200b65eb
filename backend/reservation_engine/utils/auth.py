from datetime import datetime, timedelta, timezone
from typing import Sequence

import jwt
from jwt import InvalidTokenError

ADMIN_ROLE = "admin"


def create_access_token(
    *,
    subject: str,
    secret: str,
    algorithm: str = "HS256",
    role: str = ADMIN_ROLE,
    expires_delta: timedelta | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=30))
    payload = {"sub": subject, "role": role, "iat": now, "exp": exp}
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_admin_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
) -> str:
    """Return the token subject if it is a valid, unexpired admin token."""
    try:
        payload = jwt.decode(token, secret, algorithms=list(algorithms))
    except InvalidTokenError as exc:  # includes ExpiredSignatureError
        raise ValueError("invalid token") from exc

    sub = payload.get("sub")
    if not sub:
        raise ValueError("token missing sub")
    if payload.get("role") != ADMIN_ROLE:
        raise ValueError("token is not an admin token")
    return str(sub)
