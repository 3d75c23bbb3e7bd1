"""
Bearer-token verification for dashboard endpoints.

Tokens are issued elsewhere; this module only decodes HS256 tokens carrying
an `accountId` claim.
"""

from typing import Optional

import jwt

from .errors import AuthorizationError


def get_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def decode_account_id(auth_header: Optional[str], secret: str) -> str:
    """
    Resolve the authenticated account from an Authorization header.

    Raises:
        AuthorizationError: If the token is missing, invalid or expired
    """
    token = get_bearer_token(auth_header)
    if not token:
        raise AuthorizationError("Missing token")

    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        raise AuthorizationError("Invalid token") from e

    account_id = payload.get("accountId")
    if not account_id:
        raise AuthorizationError("Token has no account")
    return account_id
