"""
Ingress — Fallback Router
===========================

What:  Catch-all route mounted after every business router.
How:   Any method on any path that no router matched raises a 404
       RouteNotFoundError naming the original URL; the error normalizer
       reports it like any other fault.
"""

from fastapi import APIRouter, Request

from ingress.exceptions import RouteNotFoundError

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

router = APIRouter()


@router.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
async def route_not_found(request: Request) -> None:
    envelope = getattr(request.state, "envelope", None)
    if envelope is not None:
        raise RouteNotFoundError(envelope.original_url)

    url = request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    raise RouteNotFoundError(url)
