"""
Ingress — Route Table
=======================

What:  Ordered (path prefix, router) bindings mounted behind the pipeline.
How:   mount() includes each router under its prefix in table order, so the
       first matching prefix wins, then includes the fallback router last.

Business routers (users, tours, reviews, ...) live outside this package and
are passed in through `create_app(route_table=...)`:

    create_app(route_table=(
        RouteBinding("/api/v1/users", user_router),
        RouteBinding("/api/v1/tours", tour_router),
        RouteBinding("/api/v1/reviews", review_router),
    ))

They receive sanitized query strings and bodies through the usual FastAPI
parameters, and signal failures by raising ApplicationError.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple

from fastapi import APIRouter, FastAPI

from ingress.routes import fallback, health


@dataclass(frozen=True)
class RouteBinding:
    prefix: str
    router: APIRouter


RouteTable = Tuple[RouteBinding, ...]

DEFAULT_ROUTE_TABLE: RouteTable = (RouteBinding("", health.router),)


def mount(app: FastAPI, route_table: Sequence[RouteBinding]) -> RouteTable:
    """Mount `route_table` on `app`, fallback last. Returns the frozen table."""
    table = tuple(route_table)
    for binding in table:
        app.include_router(binding.router, prefix=binding.prefix)
    app.include_router(fallback.router)
    return table
