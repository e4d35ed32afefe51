"""
Ingress — Application Configuration
=====================================

What:  Centralized configuration management using Pydantic Settings.
How:   Pydantic Settings reads from environment variables (or .env file),
       validates types/ranges, and provides a singleton `settings` object.
       Tests build their own `Settings(...)` and hand it to `create_app()`.
Who:   Read by the pipeline assembler, the error normalizer and the app factory.
When:  Loaded once at module import time; validated on construction.

Comma-separated values:
    List-like settings (origins, whitelist, exempt paths, disabled stages) are
    stored as plain strings so they can be set from a single env var, and are
    exposed as lists through the matching `*_list` property.
"""

from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

# Stage names that may be switched off through DISABLED_STAGES.
# Router dispatch, the fallback router and the error normalizer are not optional.
OPTIONAL_STAGES = (
    "request_id",
    "trust_proxy",
    "body_parser",
    "cookie_parser",
    "cors",
    "static",
    "security_headers",
    "request_logging",
    "throttle",
    "sanitizer",
    "parameter_pollution",
    "compression",
)


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Pipeline settings loaded from environment variables.

    All settings have defaults matching the reference deployment: a 10 KB
    body ceiling, 100 requests per client per hour, a permissive CORS policy
    and the tour-filter fields allowed to repeat in query strings.
    """

    # ── Run mode ──────────────────────────────────────────────────────────
    # development: request logging on, fault diagnostics in error bodies
    # production:  request logging off, unexpected faults reported generically
    run_mode: str = Field(default="development")

    @field_validator("run_mode")
    @classmethod
    def validate_run_mode(cls, v: str) -> str:
        mode = v.strip().lower()
        if mode not in {"development", "production"}:
            raise ValueError(f"Invalid run_mode '{v}'. Must be 'development' or 'production'")
        return mode

    @property
    def is_production(self) -> bool:
        return self.run_mode == "production"

    # ── Server ────────────────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)

    # Valid: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    # ── Client identity ───────────────────────────────────────────────────
    # When True, the client address comes from the leftmost X-Forwarded-For
    # entry and the scheme from X-Forwarded-Proto. The default trusts these
    # headers, so any client can choose its throttle key by sending them.
    # Set TRUST_PROXY=false unless a proxy in front overwrites both headers.
    trust_proxy: bool = Field(default=True)

    # ── Body parsing ──────────────────────────────────────────────────────
    # Ceiling for JSON and urlencoded bodies, in bytes (10 KB)
    body_limit: int = Field(default=10 * 1024, ge=1, le=50 * 1024 * 1024)

    # ── CORS ──────────────────────────────────────────────────────────────
    cors_origins: str = Field(default="*")
    cors_methods: str = Field(default="GET,HEAD,PUT,PATCH,POST,DELETE")
    cors_allow_headers: str = Field(default="*")
    cors_allow_credentials: bool = Field(default=False)
    cors_max_age: int = Field(default=600, ge=0, le=86400)

    @property
    def cors_origins_list(self) -> List[str]:
        return _split(self.cors_origins)

    @property
    def cors_methods_list(self) -> List[str]:
        return [method.upper() for method in _split(self.cors_methods)]

    @property
    def cors_allow_headers_list(self) -> List[str]:
        return _split(self.cors_allow_headers)

    # ── Static assets ─────────────────────────────────────────────────────
    # Directory served ahead of the security headers; unset disables the stage
    static_directory: Optional[str] = Field(default=None)

    # ── Throttle ──────────────────────────────────────────────────────────
    # Fixed window per client address
    throttle_window_ms: int = Field(default=60 * 60 * 1000, ge=1000, le=7 * 24 * 3600 * 1000)
    throttle_max: int = Field(default=100, ge=1, le=1_000_000)
    throttle_message: str = Field(
        default="Too many requests from this IP, please try again in an hour!"
    )
    throttle_exempt_paths: str = Field(default="/health")

    @property
    def throttle_window_seconds(self) -> float:
        return self.throttle_window_ms / 1000

    @property
    def throttle_exempt_paths_list(self) -> List[str]:
        return _split(self.throttle_exempt_paths)

    # ── Sanitization ──────────────────────────────────────────────────────
    # Fields allowed to repeat in query strings / urlencoded bodies
    hpp_whitelist: str = Field(
        default="duration,ratingsQuantity,ratingsAverage,maxGroupSize,difficulty,price"
    )
    # Also strip keys containing '.', not only keys starting with '$'
    strip_dotted_keys: bool = Field(default=False)

    @property
    def hpp_whitelist_list(self) -> List[str]:
        return _split(self.hpp_whitelist)

    # ── Compression ───────────────────────────────────────────────────────
    # Responses smaller than this are sent uncompressed
    compression_minimum_size: int = Field(default=500, ge=0)

    # ── Stage switches ────────────────────────────────────────────────────
    disabled_stages: str = Field(default="")

    @property
    def disabled_stages_list(self) -> List[str]:
        return _split(self.disabled_stages)

    @model_validator(mode="after")
    def validate_disabled_stages(self) -> "Settings":
        unknown = [name for name in self.disabled_stages_list if name not in OPTIONAL_STAGES]
        if unknown:
            raise ValueError(
                f"Unknown stage(s) in disabled_stages: {', '.join(unknown)}. "
                f"Optional stages: {', '.join(OPTIONAL_STAGES)}"
            )
        return self

    def stage_enabled(self, name: str) -> bool:
        return name not in self.disabled_stages_list

    # ── Pydantic Settings Config ──────────────────────────────────────────
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


# Singleton instance used by the module-level app
settings = Settings()
