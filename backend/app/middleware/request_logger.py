# backend/app/middleware/request_logger.py
import logging
import time
import re
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("request")


_EMAIL_RE = re.compile(r"([a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+)")
_IP_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")


def _redact_pii(text: Optional[str]) -> Optional[str]:
    if not text:
        return text
    text = _EMAIL_RE.sub("[REDACTED_EMAIL]", text)
    text = _IP_RE.sub("[REDACTED_IP]", text)
    return text


def _client_ip_from_request(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """
    One log line per request: method, redacted path, status, duration,
    client ip and X-Request-Id (echoed back on the response).
    """

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        request_id = request.headers.get("X-Request-Id")
        path = _redact_pii(request.url.path)
        client_ip = _redact_pii(_client_ip_from_request(request))

        try:
            response: Response = await call_next(request)
        except Exception:
            duration_ms = int((time.time() - start) * 1000)
            logger.exception(
                "%s %s 500 %sms ip=%s req_id=%s", request.method, path, duration_ms, client_ip, request_id
            )
            raise

        duration_ms = int((time.time() - start) * 1000)
        if request_id:
            response.headers.setdefault("X-Request-Id", request_id)

        logger.info(
            "%s %s %s %sms ip=%s req_id=%s",
            request.method, path, response.status_code, duration_ms, client_ip, request_id,
        )
        return response
