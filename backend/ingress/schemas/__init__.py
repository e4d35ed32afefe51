"""
Ingress — Response Schemas
============================

Pydantic models for the bodies the service itself produces. They document
the API contract in the OpenAPI schema; business routers bring their own.
"""

from ingress.schemas.responses import ErrorResponse, HealthResponse

__all__ = ["ErrorResponse", "HealthResponse"]
