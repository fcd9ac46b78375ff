from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence

import jwt
from jwt import InvalidTokenError


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    tenant_id: int | None = None


def create_access_token(
    *,
    user_id: int,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
    tenant_id: int | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=30))
    payload: dict[str, object] = {"sub": str(user_id), "iat": now, "exp": exp}
    if tenant_id is not None:
        payload["tid"] = tenant_id
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_claims(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
) -> AccessClaims:
    try:
        payload = jwt.decode(token, secret, algorithms=list(algorithms))
    except InvalidTokenError as exc:  # includes ExpiredSignatureError
        raise ValueError("invalid token") from exc

    sub = payload.get("sub")
    if sub is None:
        raise ValueError("token missing sub")
    try:
        user_id = int(sub)
    except (TypeError, ValueError) as exc:
        raise ValueError("token sub is not an integer") from exc

    tid = payload.get("tid")
    if tid is not None and (isinstance(tid, bool) or not isinstance(tid, int)):
        raise ValueError("token tid is not an integer")
    return AccessClaims(user_id=user_id, tenant_id=tid)
