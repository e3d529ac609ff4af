"""Bearer-token authentication for the media API."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import jwt
from fastapi import Request

from api.errors import Unauthenticated

# Security event logger - separate from regular application logging
security_logger = logging.getLogger("security.auth")

logger = logging.getLogger(__name__)

TOKEN_ISSUER = "tubely-access"
TOKEN_ALGORITHM = "HS256"


def get_bearer_token(headers: Mapping[str, str]) -> str:
    """
    Extract the token from an `Authorization: Bearer <token>` header.

    Raises:
        Unauthenticated: if the header is missing or not a bearer credential
    """
    auth_header = headers.get("authorization")
    if not auth_header:
        raise Unauthenticated("Couldn't find JWT", cause=ValueError("no authorization header"))

    scheme, _, token = auth_header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise Unauthenticated("Couldn't find JWT", cause=ValueError("malformed authorization header"))
    return token


class TokenValidator:
    """Validates HS256 access tokens and returns the subject user ID."""

    def __init__(self, secret: str):
        self._secret = secret

    def validate(self, token: str) -> str:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                issuer=TOKEN_ISSUER,
                options={"require": ["exp", "iss", "sub"]},
            )
        except jwt.InvalidTokenError as e:
            raise Unauthenticated(cause=e) from e

        subject = claims["sub"]
        try:
            return str(uuid.UUID(str(subject)))
        except ValueError as e:
            raise Unauthenticated(cause=e) from e

    def issue(self, user_id: str, expires_in: timedelta = timedelta(hours=1)) -> str:
        """Mint an access token. Used by the CLI and tests; login flows live elsewhere."""
        now = datetime.now(timezone.utc)
        return jwt.encode(
            {
                "iss": TOKEN_ISSUER,
                "sub": str(user_id),
                "iat": now,
                "exp": now + expires_in,
            },
            self._secret,
            algorithm=TOKEN_ALGORITHM,
        )


def _get_request_context(request: Optional[Request]) -> dict:
    """Extract security-relevant context from a request for logging."""
    if request is None:
        return {"ip_address": "unknown", "user_agent": "unknown", "path": "unknown"}
    return {
        "ip_address": request.client.host if request.client else "unknown",
        "user_agent": request.headers.get("user-agent", "unknown"),
        "path": request.url.path,
    }


def authenticate(headers: Mapping[str, str], validator: TokenValidator, request: Optional[Request] = None) -> str:
    """
    Resolve the calling user from request headers.

    Logs failures to the security logger and re-raises them as Unauthenticated.
    """
    try:
        token = get_bearer_token(headers)
        user_id = validator.validate(token)
    except Unauthenticated as e:
        security_logger.warning(
            "Authentication failed",
            extra={
                "event": "auth_failure",
                "reason": type(e.cause).__name__ if e.cause else "unknown",
                **_get_request_context(request),
            },
        )
        raise

    security_logger.debug(
        "Authentication successful",
        extra={"event": "auth_success", "user_id": user_id, **_get_request_context(request)},
    )
    return user_id
