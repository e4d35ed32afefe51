"""
Ingress — Error Normalizer
============================

What:  The single place where a fault becomes an HTTP response.
How:   Every exception raised by a stage or a router propagates to the
       pipeline's terminal catch, which hands it to ErrorNormalizer.render().
       The exception is first reduced to a Fault (message, status code,
       operational flag), then rendered by one of two branches.

Branches:
    Operational fault   → fault's status; {"status": "fail"|"error", "message": ...}
    Unexpected fault    → 500;
                          production:  {"status": "error", "message": <generic>}
                          development: adds "error" (type) and "stack"

Recognized operational faults:
    ApplicationError and subclasses        as raised
    starlette / FastAPI HTTPException      status and detail of the exception
    RequestValidationError                 400, "Invalid input data. ..."
    any object with a truthy `operational` (or `is_operational`) attribute

render() never raises: a fault that cannot be read defaults to 500 and the
generic message, and a failure while rendering falls back to a fixed body.
"""

import logging
import traceback
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, Optional

from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, Response

from ingress.envelope import RequestEnvelope
from ingress.exceptions import status_label
from ingress.schemas import ErrorResponse

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "Something went very wrong!"


@dataclass
class Fault:
    message: str
    status_code: int
    operational: bool
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return status_label(self.status_code)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Fault":
        if isinstance(exc, RequestValidationError):
            return cls(_validation_message(exc), 400, True)

        if isinstance(exc, StarletteHTTPException):
            detail = exc.detail if isinstance(exc.detail, str) else None
            return cls(
                message=detail or _reason(exc.status_code),
                status_code=_valid_status(exc.status_code),
                operational=True,
                headers=dict(exc.headers or {}),
            )

        operational = getattr(exc, "operational", None)
        if operational is None:
            operational = getattr(exc, "is_operational", False)

        message = getattr(exc, "message", None)
        headers = getattr(exc, "headers", None)
        return cls(
            message=message if isinstance(message, str) and message else GENERIC_MESSAGE,
            status_code=_valid_status(getattr(exc, "status_code", None)),
            operational=operational is True,
            headers=dict(headers) if isinstance(headers, dict) else {},
        )


def _valid_status(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and 400 <= value <= 599:
        return value
    return 500


def _reason(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return GENERIC_MESSAGE


def _validation_message(exc: RequestValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        text = error.get("msg", "invalid value")
        problems.append(f"{location}: {text}" if location else text)
    return "Invalid input data. " + ". ".join(problems)


class ErrorNormalizer:
    """
    Converts faults into the uniform `{status, message}` error response.

    Args:
        run_mode: 'production' hides unexpected-fault details; anything else
                  includes them.
    """

    def __init__(self, run_mode: str = "development"):
        self.run_mode = run_mode

    @property
    def expose_details(self) -> bool:
        return self.run_mode != "production"

    def render(self, exc: BaseException, envelope: Optional[RequestEnvelope] = None) -> Response:
        try:
            return self._render(exc, envelope)
        except Exception:
            logger.exception("Error normalizer failed while rendering %s", type(exc).__name__)
            return JSONResponse(
                status_code=500,
                content={"status": "error", "message": GENERIC_MESSAGE},
            )

    def _render(self, exc: BaseException, envelope: Optional[RequestEnvelope]) -> Response:
        fault = Fault.from_exception(exc)
        rid = envelope.request_id if envelope is not None else ""

        if fault.operational:
            log_level = logging.ERROR if fault.status_code >= 500 else logging.INFO
            logger.log(log_level, "[%s] %d %s", rid, fault.status_code, fault.message)
            return JSONResponse(
                status_code=fault.status_code,
                content=ErrorResponse(status=fault.status, message=fault.message).model_dump(),
                headers=fault.headers,
            )

        logger.error("[%s] Unexpected error: %s", rid, repr(exc), exc_info=exc)
        content: Dict[str, Any] = ErrorResponse(status="error", message=GENERIC_MESSAGE).model_dump()
        if self.expose_details:
            content["error"] = type(exc).__name__
            content["message"] = str(exc) or GENERIC_MESSAGE
            content["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return JSONResponse(status_code=500, content=content)


async def propagate_fault(request: Any, exc: Exception) -> Response:
    """
    Exception handler that hands FastAPI's own errors back to the pipeline.

    FastAPI formats HTTPException and RequestValidationError itself by
    default; registering this handler for both sends them to the error
    normalizer like every other fault.
    """
    raise exc
