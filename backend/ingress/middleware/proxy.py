"""
Ingress — Trust-Proxy Stage
=============================

What:  Derives the client address and protocol the rest of the pipeline uses.
How:   With trust enabled, the leftmost X-Forwarded-For entry is the client
       and X-Forwarded-Proto (http or https) the scheme the routers see.
       With trust disabled both headers are ignored and the socket peer
       address and scheme are used.
When:  Before any stage that reads client identity (the throttle keys on it).
"""

import logging
from typing import Optional

from starlette.types import ASGIApp

from ingress.envelope import RequestEnvelope
from ingress.middleware.base import Stage

logger = logging.getLogger(__name__)


class TrustProxyStage(Stage):
    name = "trust_proxy"

    def __init__(self, trusted: bool = True):
        self.trusted = trusted

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        envelope.client_ip = envelope.peer_address
        if not self.trusted:
            return None

        forwarded = envelope.headers.get("x-forwarded-for", "")
        chain = [addr.strip() for addr in forwarded.split(",") if addr.strip()]
        if chain:
            envelope.forwarded_for = chain
            envelope.client_ip = chain[0]

        proto = envelope.headers.get("x-forwarded-proto", "").split(",")[0].strip().lower()
        if proto in ("http", "https"):
            envelope.protocol = proto

        return None
