"""
Common HTTP utilities: middlewares, client IP resolution, health checks.
"""

import asyncio
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Tuple

from databases import Database
from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from api.errors import PayloadTooLarge

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
# Accept client-supplied request IDs only if they look sane
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

STORAGE_CHECK_TIMEOUT = 2.0

SECURITY_HEADERS = {
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes read back may be naive
    even though they were written as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For only from trusted proxies.

    Trusted proxies come from the app's configuration; with none configured the
    header is never trusted, which prevents rate limit bypass by spoofing.
    """
    client_ip = get_remote_address(request)

    config = getattr(request.app.state, "config", None)
    trusted_proxies = config.trusted_proxies if config is not None else frozenset()
    if trusted_proxies and client_ip in trusted_proxies:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()

    return client_ip


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Stamp SECURITY_HEADERS onto every response, including served assets."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to request.state and echo it in the X-Request-ID header."""

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(REQUEST_ID_HEADER)
        if incoming and _REQUEST_ID_PATTERN.match(incoming):
            request_id = incoming
        else:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class BodySizeLimitMiddleware:
    """
    Cap request body size per route without buffering the body.

    A declared Content-Length over the limit is answered with 413 before the
    application sees the request. Bodies without a usable Content-Length are
    counted as they are read. Once the count crosses the limit the reader
    raises PayloadTooLarge, whatever the application does with that error is
    discarded, and the client gets the 413 from here instead.
    """

    def __init__(self, app: ASGIApp, limits: Iterable[Tuple[str, int]]):
        self.app = app
        self.limits = [(re.compile(pattern), limit) for pattern, limit in limits]

    def _limit_for(self, path: str) -> Optional[int]:
        for pattern, limit in self.limits:
            if pattern.match(path):
                return limit
        return None

    @staticmethod
    def _too_large(limit: int) -> JSONResponse:
        return JSONResponse(
            status_code=413,
            content={"detail": f"Upload too large. Maximum size is {limit // (1024 * 1024)} MB"},
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = self._limit_for(scope["path"])
        if limit is None:
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers") or [])
        content_length = headers.get(b"content-length")
        if content_length is not None:
            try:
                declared = int(content_length)
            except ValueError:
                declared = None
            if declared is not None and declared > limit:
                logger.warning(
                    f"Rejected {scope['method']} {scope['path']}: Content-Length {declared} exceeds {limit}"
                )
                await self._too_large(limit)(scope, receive, send)
                return

        received = 0
        exceeded = False
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received, exceeded
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    exceeded = True
                    raise PayloadTooLarge(
                        f"Upload too large. Maximum size is {limit // (1024 * 1024)} MB"
                    )
            return message

        async def guarded_send(message: Message) -> None:
            nonlocal response_started
            # Responses built after the overflow describe a truncated body
            if exceeded and not response_started:
                return
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, guarded_send)
        except Exception:
            # Middlewares in between may wrap the overflow in an ExceptionGroup
            if not exceeded or response_started:
                raise

        if exceeded and not response_started:
            logger.warning(f"Rejected {scope['method']} {scope['path']}: streamed body exceeds {limit}")
            await self._too_large(limit)(scope, receive, send)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors with a proper JSON response."""
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded",
            "error": str(exc.detail),
        },
    )


def _probe_writable(root: Path) -> bool:
    """Create and remove a marker file under `root`."""
    marker = root / f".tubely-health-{uuid.uuid4().hex}"
    try:
        root.mkdir(parents=True, exist_ok=True)
        marker.write_bytes(b"ok")
        marker.unlink()
    except OSError:
        return False
    return True


async def _database_ok(database: Database) -> bool:
    try:
        await database.fetch_one("SELECT 1")
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False
    return True


async def _storage_ok(storage_root: Optional[Path]) -> bool:
    # Object storage is not probed per request; only local asset roots are
    if storage_root is None:
        return True
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, _probe_writable, storage_root), timeout=STORAGE_CHECK_TIMEOUT
        )
    except asyncio.TimeoutError:
        logger.warning(f"Storage health check on {storage_root} timed out")
        return False


async def check_health(database: Database, storage_root: Optional[Path]) -> dict:
    """
    Check the database and, for the local backend, the asset directory.

    Returns {"checks": {...}, "healthy": bool, "status_code": 200 or 503}.
    """
    checks = {
        "database": await _database_ok(database),
        "storage": await _storage_ok(storage_root),
    }
    healthy = all(checks.values())
    return {"checks": checks, "healthy": healthy, "status_code": 200 if healthy else 503}
