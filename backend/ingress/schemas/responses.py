"""Response models for error bodies and the health check."""

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    What:  Body of every error response the pipeline sends.
    Who:   Produced by the error normalizer, for operational and unexpected faults.

    Example:
        {"status": "fail", "message": "Can't find /api/v1/bogus on this server!"}
    """
    status: str = Field(description="'fail' for 4xx faults, 'error' for 5xx faults")
    message: str = Field(description="Client-safe description of the fault")


class HealthResponse(BaseModel):
    """Returned by GET /health for monitoring and load balancer probes."""
    status: str = Field(description="Overall service status")
    version: str = Field(description="Application version")
    run_mode: str = Field(description="development or production")
    uptime_seconds: float = Field(description="Seconds since the process started")
