"""
Request logging middleware.

Pure ASGI so that the Server-Sent Events stream passes through untouched.
Event streams are logged when they open and close; their bodies are never
buffered.
"""

import json
import logging
import time
import uuid
from typing import Iterable, Optional

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..core.logging_config import filter_sensitive_data, truncate_large_data

logger = logging.getLogger(__name__)

MAX_BODY_LOG = 2000
REQUEST_ID_HEADER = b"x-request-id"


def _sanitize_body(raw: bytes) -> Optional[str]:
    """Decode a JSON or text body for logging with credentials masked."""
    if not raw:
        return None
    text = raw.decode("utf-8", errors="ignore")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return truncate_large_data(text, max_length=MAX_BODY_LOG)
    return truncate_large_data(
        json.dumps(filter_sensitive_data(payload), ensure_ascii=False), max_length=MAX_BODY_LOG
    )


def _error_reason(body: Optional[str]) -> Optional[str]:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(payload, dict) and payload.get("detail"):
        return str(payload["detail"])
    return body


class RequestLoggingMiddleware:
    """Log each HTTP request with its status, duration and a request id."""

    def __init__(self, app: ASGIApp, exclude_paths: Optional[Iterable[str]] = None):
        self.app = app
        self.exclude_paths = set(exclude_paths or ("/health", "/"))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path", "") in self.exclude_paths:
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "")
        headers = dict(scope.get("headers", []))
        request_id = headers.get(REQUEST_ID_HEADER, b"").decode("latin-1") or uuid.uuid4().hex[:12]
        client = scope.get("client")

        request_body = bytearray()
        response_body = bytearray()
        status_code = 0
        streaming = False

        async def logging_receive() -> Message:
            message = await receive()
            if message["type"] == "http.request" and len(request_body) < MAX_BODY_LOG:
                request_body.extend(message.get("body", b""))
            return message

        async def logging_send(message: Message) -> None:
            nonlocal status_code, streaming
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
                response_headers = dict(message.get("headers", []))
                streaming = response_headers.get(b"content-type", b"").startswith(b"text/event-stream")
                message["headers"] = list(message.get("headers", [])) + [
                    (REQUEST_ID_HEADER, request_id.encode("latin-1"))
                ]
                if streaming:
                    logger.info(f"[{request_id}] Event stream opened: {method} {path}")
            elif message["type"] == "http.response.body" and not streaming:
                if len(response_body) < MAX_BODY_LOG:
                    response_body.extend(message.get("body", b""))
            await send(message)

        logger.debug(
            f"[{request_id}] Request started: {method} {path}",
            extra={"extra_fields": {
                "request_id": request_id,
                "method": method,
                "path": path,
                "client": client[0] if client else None,
            }}
        )

        try:
            await self.app(scope, logging_receive, logging_send)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                f"[{request_id}] Request failed: {method} {path} - {e}",
                exc_info=True,
                extra={"extra_fields": {
                    "request_id": request_id,
                    "path": path,
                    "duration_ms": duration_ms,
                }}
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        if streaming:
            logger.info(f"[{request_id}] Event stream closed: {method} {path} ({duration_ms:.0f}ms)")
            return

        request_text = _sanitize_body(bytes(request_body))
        response_text = _sanitize_body(bytes(response_body))

        if status_code < 400:
            level = logging.INFO
        elif status_code < 500:
            level = logging.WARNING
        else:
            level = logging.ERROR

        message = f"[{request_id}] {method} {path} - {status_code} ({duration_ms:.2f}ms)"
        if status_code >= 400:
            message += f" | error_reason={_error_reason(response_text)}"
        logger.log(
            level,
            message,
            extra={"extra_fields": {
                "request_id": request_id,
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "request_body": request_text,
                "response_body": response_text,
            }}
        )
