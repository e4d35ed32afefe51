"""
Ingress — Request-Processing Pipeline Package
===============================================

What: The envelope every inbound request passes through before reaching the
      business routers, and every response passes through before leaving.
Who:  Imported by uvicorn (`ingress.main:app`), by pytest, and by deployments
      that mount their own routers through `create_app(route_table=...)`.

Architecture Note:

    ┌─────────────────────────────────────┐
    │   Pipeline (ordered stage list)     │  ← throttling, sanitization, headers
    ├─────────────────────────────────────┤
    │   Routes (mounted by prefix)        │  ← business routers, health, fallback
    ├─────────────────────────────────────┤
    │   Error Normalizer (terminal)       │  ← the only fault → response step
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
