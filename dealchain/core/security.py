from __future__ import annotations

import jwt
from datetime import datetime, timedelta, timezone

from dealchain.core.config import settings

# Claim keys an upstream identity service may use for the wallet address.
SUBJECT_CLAIMS = ("sub", "wallet", "user_id")


class TokenError(Exception):
    pass


def create_access_token(*, user_id: str, ttl: timedelta | None = None) -> str:
    """
    Mint a bearer token for a wallet. Signature checks on the wallet itself
    happen upstream; this is what tests and local tooling use.
    """
    issued = datetime.now(timezone.utc)
    lifetime = ttl if ttl is not None else timedelta(minutes=settings.JWT_ACCESS_MINUTES)
    return jwt.encode(
        {"sub": str(user_id), "type": "access", "iat": issued, "exp": issued + lifetime},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALG,
    )


def wallet_from_token(token: str) -> str:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError("Invalid token") from e

    if claims.get("type", "access") != "access":
        raise TokenError("Not an access token")

    for key in SUBJECT_CLAIMS:
        if claims.get(key):
            return str(claims[key])
    raise TokenError("Token missing wallet claim")
