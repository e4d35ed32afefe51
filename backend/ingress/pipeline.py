"""
Ingress — Pipeline Assembler
==============================

What:  Builds the ordered stage list and runs every HTTP request through it.
How:   build_stages() turns settings into a list of Stage objects in the fixed
       order below. PipelineMiddleware walks that list for each request, then
       dispatches to the routers, and reports any fault through the error
       normalizer. The order is data (STAGE_ORDER), checked at assembly.

Order (each optional stage can be switched off in settings):

     0. request_id            correlation id
     1. trust_proxy           client address from forwarding headers
     2. body_parser           JSON / urlencoded bodies under a byte ceiling
     3. cookie_parser
     4. cors                  answers every OPTIONS request
     5. static                optional static asset short-circuit
     6. security_headers
     7. request_logging       development run mode only
     8. throttle
     9. sanitizer             injection keys, markup
    10. parameter_pollution
    11. compression
    12. router                first matching prefix wins
    13. fallback              404 for unmatched paths
    14. error_normalizer      terminal, exactly once per request

Request flow:

    envelope ─► stage 0 ─► ... ─► stage 11 ─► routers ─► fallback
                   │ short-circuit response        │ fault
                   ▼                               ▼
          response-phase wraps of the stages already passed ◄── normalizer

A stage that returns a response or raises stops the walk; only the stages
that were passed wrap the outgoing response, so security headers apply to an
error raised by the throttle but not to a static file served before them.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from starlette.requests import ClientDisconnect
from starlette.routing import Router
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ingress.config import OPTIONAL_STAGES, Settings
from ingress.envelope import RequestEnvelope
from ingress.errors import ErrorNormalizer
from ingress.middleware.base import Stage
from ingress.middleware.body import BodyParserStage, CookieParserStage
from ingress.middleware.compression import CompressionStage
from ingress.middleware.cors import CorsStage
from ingress.middleware.logging import RequestLoggingStage
from ingress.middleware.proxy import TrustProxyStage
from ingress.middleware.rate_limit import RequestThrottle, ThrottleStage, build_throttle
from ingress.middleware.request_id import RequestIdStage
from ingress.middleware.sanitize import ParameterPollutionStage, SanitizerStage
from ingress.middleware.security import SecurityHeadersStage
from ingress.middleware.static import StaticAssetStage

logger = logging.getLogger(__name__)

TERMINAL_STAGES = ("router", "fallback", "error_normalizer")
STAGE_ORDER = OPTIONAL_STAGES + TERMINAL_STAGES


def build_stages(settings: Settings, throttle: Optional[RequestThrottle] = None) -> List[Stage]:
    """
    Ordered stage list for `settings`.

    `throttle` replaces the default in-memory throttle (tests inject one with
    a fake clock and an isolated store).
    """
    if throttle is None:
        throttle = build_throttle(
            settings.throttle_window_seconds,
            settings.throttle_max,
            message=settings.throttle_message,
        )

    candidates: List[Tuple[str, bool, object]] = [
        ("request_id", True, RequestIdStage),
        ("trust_proxy", True, lambda: TrustProxyStage(trusted=settings.trust_proxy)),
        ("body_parser", True, lambda: BodyParserStage(limit=settings.body_limit)),
        ("cookie_parser", True, CookieParserStage),
        (
            "cors",
            True,
            lambda: CorsStage(
                allow_origins=settings.cors_origins_list,
                allow_methods=settings.cors_methods_list,
                allow_headers=settings.cors_allow_headers_list,
                allow_credentials=settings.cors_allow_credentials,
                max_age=settings.cors_max_age,
            ),
        ),
        (
            "static",
            bool(settings.static_directory),
            lambda: StaticAssetStage(directory=settings.static_directory),
        ),
        ("security_headers", True, SecurityHeadersStage),
        ("request_logging", not settings.is_production, RequestLoggingStage),
        (
            "throttle",
            True,
            lambda: ThrottleStage(throttle, exempt_paths=settings.throttle_exempt_paths_list),
        ),
        ("sanitizer", True, lambda: SanitizerStage(strip_dotted_keys=settings.strip_dotted_keys)),
        (
            "parameter_pollution",
            True,
            lambda: ParameterPollutionStage(whitelist=settings.hpp_whitelist_list),
        ),
        (
            "compression",
            True,
            lambda: CompressionStage(minimum_size=settings.compression_minimum_size),
        ),
    ]

    stages = [
        factory()
        for name, wanted, factory in candidates
        if wanted and settings.stage_enabled(name)
    ]
    check_order(stages)
    return stages


def check_order(stages: Sequence[Stage]) -> None:
    """Raise ValueError unless stage names are known, unique and in STAGE_ORDER."""
    positions = []
    for stage in stages:
        if stage.name not in OPTIONAL_STAGES:
            raise ValueError(f"Unknown pipeline stage '{stage.name}'")
        positions.append(STAGE_ORDER.index(stage.name))
    if positions != sorted(set(positions)):
        names = ", ".join(stage.name for stage in stages)
        raise ValueError(f"Pipeline stages out of order or duplicated: {names}")


class _ResponseGuard:
    """Tracks whether the response started and drops writes once the client left."""

    def __init__(self, send: Send, envelope: RequestEnvelope):
        self._send = send
        self.envelope = envelope
        self.started = False

    async def send(self, message: Message) -> None:
        if self.envelope.disconnected:
            return
        if message["type"] == "http.response.start":
            self.started = True
        try:
            await self._send(message)
        except OSError as e:
            self.envelope.disconnected = True
            raise ClientDisconnect() from e


class PipelineMiddleware:
    """
    ASGI middleware running the stage list in front of the wrapped app.

    The wrapped app is the router stack (business routers, then the fallback
    router). `router` is the same router, consulted up front so that route
    parameters are on the envelope before the sanitizer runs. Non-HTTP scopes
    (lifespan, websockets) pass straight through.
    """

    def __init__(
        self,
        app: ASGIApp,
        stages: Sequence[Stage],
        normalizer: ErrorNormalizer,
        router: Optional[Router] = None,
    ):
        check_order(stages)
        self.app = app
        self.router = router
        self.stages = tuple(stages)
        self.normalizer = normalizer

    def describe(self) -> List[str]:
        """Stage names in execution order, terminal stages included."""
        return [stage.name for stage in self.stages] + list(TERMINAL_STAGES)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        envelope = RequestEnvelope(scope, receive)
        if self.router is not None:
            envelope.bind_route(self.router.routes)
        guard = _ResponseGuard(send, envelope)
        passed: List[Stage] = []

        try:
            target, target_scope, target_receive = await self._traverse(envelope, passed)
            await self._respond(target, passed, envelope, target_scope, target_receive, guard)
        except ClientDisconnect:
            logger.debug("[%s] Client disconnected, pipeline stopped", envelope.request_id)
        except Exception as exc:
            if envelope.disconnected:
                logger.debug("[%s] Client disconnected during a fault", envelope.request_id)
                return
            if guard.started:
                logger.error(
                    "[%s] Fault after the response started; connection left to close",
                    envelope.request_id,
                    exc_info=exc,
                )
                return
            response = self.normalizer.render(exc, envelope)
            await self._respond(response, passed, envelope, envelope.scope, envelope.receive, guard)

    async def _traverse(
        self, envelope: RequestEnvelope, passed: List[Stage]
    ) -> Tuple[ASGIApp, Scope, Receive]:
        for stage in self.stages:
            if envelope.disconnected:
                raise ClientDisconnect()
            shortcut = await stage.process(envelope)
            if shortcut is not None:
                return shortcut, envelope.scope, envelope.receive
            passed.append(stage)

        scope, receive = envelope.for_dispatch()
        return self.app, scope, receive

    async def _respond(
        self,
        target: ASGIApp,
        passed: Sequence[Stage],
        envelope: RequestEnvelope,
        scope: Scope,
        receive: Receive,
        guard: _ResponseGuard,
    ) -> None:
        app = target
        for stage in reversed(passed):
            app = stage.wrap(app, envelope)
        await app(scope, receive, guard.send)
