"""
Ingress — Security Header Stage
=================================

What:  Adds a fixed set of hardening headers to every response that passes
       through it, error responses included.
How:   Headers are added on the way out and never overwrite a header that a
       later stage or a router already set. The set is not configurable.
"""

from starlette.types import ASGIApp

from ingress.envelope import RequestEnvelope
from ingress.middleware.base import HeaderInjector, Stage

SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
        "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
        "object-src 'none';script-src 'self';script-src-attr 'none';"
        "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


class SecurityHeadersStage(Stage):
    name = "security_headers"

    def wrap(self, app: ASGIApp, envelope: RequestEnvelope) -> ASGIApp:
        return HeaderInjector(app, SECURITY_HEADERS)
