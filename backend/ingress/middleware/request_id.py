"""
Ingress — Request ID Stage
============================

What:  Assigns a correlation id to each request and returns it in X-Request-ID.
How:   Reuses a well-formed client-supplied X-Request-ID, otherwise generates a
       short UUID; stores it on the envelope and in a ContextVar so log lines
       anywhere in the request can include it.
When:  First stage, ahead of everything that logs.
"""

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.types import ASGIApp

from ingress.envelope import RequestEnvelope
from ingress.middleware.base import HeaderInjector, Stage

# Coroutine-local id of the request being processed
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIdFilter(logging.Filter):
    """Stamps `record.request_id` with the id of the request being processed ("-" outside one)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


# Client ids end up in log lines; anything else is replaced
_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestIdStage(Stage):
    name = "request_id"

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        supplied = envelope.headers.get("x-request-id", "")
        rid = supplied if _VALID_ID.match(supplied) else str(uuid.uuid4())[:8]

        envelope.request_id = rid
        request_id_var.set(rid)
        return None

    def wrap(self, app: ASGIApp, envelope: RequestEnvelope) -> ASGIApp:
        return HeaderInjector(app, {"X-Request-ID": envelope.request_id}, overwrite=True)
