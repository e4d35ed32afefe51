"""
Ingress — Response Compression Stage
======================================

What:  Gzips response bodies for clients that send Accept-Encoding: gzip.
How:   Wraps the downstream app in Starlette's GZipMiddleware; responses
       below `minimum_size` bytes are sent as-is. The request is not touched.
"""

from starlette.middleware.gzip import GZipMiddleware
from starlette.types import ASGIApp

from ingress.envelope import RequestEnvelope
from ingress.middleware.base import Stage


class CompressionStage(Stage):
    name = "compression"

    def __init__(self, minimum_size: int = 500):
        self.minimum_size = minimum_size

    def wrap(self, app: ASGIApp, envelope: RequestEnvelope) -> ASGIApp:
        return GZipMiddleware(app, minimum_size=self.minimum_size)
