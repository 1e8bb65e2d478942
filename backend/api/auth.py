import hmac
import logging
from typing import Dict, Optional

from fastapi import Request

from backend.api.errors import RpcError

logger = logging.getLogger("smartcharge.api.auth")


class TokenIdentityVerifier:
    """Resolves an ``Authorization: Bearer`` token to a user id."""

    def __init__(self, tokens: Dict[str, str]):
        self._tokens = dict(tokens)

    def resolve(self, authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        token = token.strip()
        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known, token):
                return user_id
        return None

    def require(self, request: Request) -> str:
        """FastAPI dependency body: the caller's user id or an unauthenticated error."""
        user_id = self.resolve(request.headers.get("Authorization"))
        if user_id is None:
            logger.warning("Rejected unauthenticated call to %s", request.url.path)
            raise RpcError("unauthenticated", "The function must be called while authenticated.")
        return user_id
