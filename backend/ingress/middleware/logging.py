"""
Ingress — Diagnostic Request Logging Stage
============================================

What:  One access-log line per request: method, path, status, duration,
       request id and client address.
When:  Registered only in the development run mode.

Log level follows the response status:
    5xx → ERROR, 4xx → WARNING, everything else → INFO

Request bodies, cookies and auth headers are never logged.
"""

import logging
import time
from typing import Optional

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ingress.envelope import RequestEnvelope
from ingress.middleware.base import Stage

logger = logging.getLogger("ingress.access")


class RequestLoggingStage(Stage):
    name = "request_logging"

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        # Duration is measured from here, so it covers the later stages too
        envelope.scope.setdefault("state", {})["started_at"] = time.perf_counter()
        return None

    def wrap(self, app: ASGIApp, envelope: RequestEnvelope) -> ASGIApp:
        async def logged(scope: Scope, receive: Receive, send: Send) -> None:
            status = 0

            async def capture(message: Message) -> None:
                nonlocal status
                if message["type"] == "http.response.start":
                    status = message["status"]
                await send(message)

            await app(scope, receive, capture)
            self._log(envelope, status)

        return logged

    @staticmethod
    def _log(envelope: RequestEnvelope, status: int) -> None:
        started_at = envelope.scope.get("state", {}).get("started_at", time.perf_counter())
        duration_ms = (time.perf_counter() - started_at) * 1000

        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            envelope.method,
            envelope.path,
            status,
            duration_ms,
            envelope.request_id,
            envelope.client_ip,
            extra={
                "request_id": envelope.request_id,
                "method": envelope.method,
                "path": envelope.path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": envelope.client_ip,
            },
        )
