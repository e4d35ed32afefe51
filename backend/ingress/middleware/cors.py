"""
Ingress — Cross-Origin Stage
==============================

What:  Applies the cross-origin policy and answers every OPTIONS request.
How:   Starlette's CORSMiddleware does the policy work. A real preflight
       (Origin plus Access-Control-Request-Method) is answered from the
       policy; any other OPTIONS request gets a bare 204 with an Allow
       header. Either way no later stage runs. Other requests continue and
       pick up the CORS response headers on the way out.
"""

from typing import Optional, Sequence

from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ingress.envelope import RequestEnvelope
from ingress.middleware.base import Stage

DEFAULT_METHODS = ("GET", "HEAD", "PUT", "PATCH", "POST", "DELETE")


class CorsStage(Stage):
    name = "cors"

    def __init__(
        self,
        allow_origins: Sequence[str] = ("*",),
        allow_methods: Sequence[str] = DEFAULT_METHODS,
        allow_headers: Sequence[str] = ("*",),
        allow_credentials: bool = False,
        expose_headers: Sequence[str] = ("X-Request-ID", "Retry-After"),
        max_age: int = 600,
    ):
        self.options = dict(
            allow_origins=list(allow_origins),
            allow_methods=list(allow_methods),
            allow_headers=list(allow_headers),
            allow_credentials=allow_credentials,
            expose_headers=list(expose_headers),
            max_age=max_age,
        )
        allowed = ", ".join(list(allow_methods) + ["OPTIONS"])
        # Answers OPTIONS for any path; CORS headers are added by the policy
        self._options_responder = CORSMiddleware(
            Response(status_code=204, headers={"Allow": allowed}), **self.options
        )

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        if envelope.method == "OPTIONS":
            return self._options_responder
        return None

    def wrap(self, app: ASGIApp, envelope: RequestEnvelope) -> ASGIApp:
        return CORSMiddleware(app, **self.options)
