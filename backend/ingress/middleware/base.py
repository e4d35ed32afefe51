"""
Ingress — Stage Contract
==========================

What:  The uniform interface every pipeline stage implements, plus the small
       ASGI wrapper stages use to add response headers.

Stage contract:
    process(envelope) -> None | ASGI app
        Inspect or mutate the request envelope. Returning None passes the
        request on to the next stage; returning an ASGI app (usually a
        Response) short-circuits the pipeline and sends it instead. Raising
        an exception faults the request; the error normalizer reports it.

    wrap(app, envelope) -> ASGI app
        Response-phase hook, applied once the stage has let the request
        through. Stages that only touch the request keep the default.

process() must not suspend except to do I/O (reading the body).
"""

from typing import Mapping, Optional

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ingress.envelope import RequestEnvelope


class Stage:
    """Base class for pipeline stages. Subclasses set `name` and override hooks."""

    name = "stage"

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        return None

    def wrap(self, app: ASGIApp, envelope: RequestEnvelope) -> ASGIApp:
        return app

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class HeaderInjector:
    """
    Adds headers to the response start message of the wrapped app.

    With overwrite=False a header already set by the wrapped app wins.
    """

    def __init__(self, app: ASGIApp, headers: Mapping[str, str], overwrite: bool = False):
        self.app = app
        self.headers = headers
        self.overwrite = overwrite

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                headers = MutableHeaders(scope=message)
                for name, value in self.headers.items():
                    if self.overwrite or name not in headers:
                        headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_headers)
