# Middleware package init
"""
Ingress — Pipeline Stages
===========================

What:  Cross-cutting handlers every request passes through before the routers.
How:   Each module defines one or two Stage subclasses (see base.py for the
       contract); ingress.pipeline assembles them in a fixed order.

Stage order (request direction):
    Request → [Request ID] → [Trust Proxy] → [Body] → [Cookies] → [CORS]
            → [Static] → [Security Headers] → [Logging] → [Throttle]
            → [Sanitizer] → [Parameter Pollution] → [Compression] → Routers

    Response-phase wraps run in reverse:
    Response ← [Request ID] ← ... ← [Compression] ← Routers / Error Normalizer

    This means:
    - The throttle rejects a client before any sanitization work is done
    - CORS answers preflights before headers, throttle or routers run
    - Security and rate-limit headers also land on error responses
"""
