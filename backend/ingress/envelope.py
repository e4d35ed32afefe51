"""
Ingress — Request Envelope
============================

What:  Mutable per-request context threaded through every pipeline stage.
How:   Built from the ASGI scope when the request enters the pipeline, mutated
       by the stages (client address, parsed body, cookies, sanitized query),
       and finally written back into a scope/receive pair for the routers.
Who:   Created by PipelineMiddleware, one per request; reachable from route
       handlers as `request.state.envelope`.
When:  Lives for one request and is dropped once the response is sent.

Write-back (for_dispatch):
    Routers read the query string and body through FastAPI's normal parameter
    binding, so sanitized values have to end up in the ASGI scope. The query
    string is re-encoded only when a stage changed the parsed query, and a
    consumed body is replayed (re-serialized when a stage changed it) with a
    matching Content-Length. Route parameters are bound before the stages run
    (bind_route); when a stage changed them, the path is rebuilt from the
    route's path format so the router binds the sanitized values. The scheme
    from a trusted X-Forwarded-Proto replaces the socket scheme.
"""

import copy
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from starlette.datastructures import Headers
from starlette.requests import ClientDisconnect
from starlette.routing import BaseRoute, Match, Route, replace_params
from starlette.types import Message, Receive, Scope

from ingress import querystring


class RequestEnvelope:
    """
    Per-request state shared by the pipeline stages.

    Attributes:
        method, path:    Request line, path already percent-decoded
        headers:         Immutable request headers
        peer_address:    Socket peer address from the server
        client_ip:       Trusted client address (set by the trust-proxy stage)
        forwarded_for:   Addresses from X-Forwarded-For when the proxy is trusted
        protocol:        http / https, honoring X-Forwarded-Proto when trusted
        query:           Parsed (nested) query string
        body:            Parsed JSON / urlencoded body, {} when none was parsed
        body_kind:       'json', 'form' or None when the body stream was not read
        cookies:         Parsed Cookie header
        params:          Route parameters bound ahead of dispatch
        request_id:      Correlation id for logs and the X-Request-ID header
        sanitized:       Side effects recorded by the sanitizer passes
        polluted:        Multi-values collapsed by parameter-pollution resolution
        rate_limit:      Throttle decision for this request, if throttled
    """

    def __init__(self, scope: Scope, receive: Receive):
        self.scope = scope
        self._receive = receive

        self.method: str = scope["method"]
        self.path: str = scope["path"]
        self.headers = Headers(scope=scope)

        client = scope.get("client")
        self.peer_address: str = client[0] if client else "unknown"
        self.client_ip: str = self.peer_address
        self.forwarded_for: List[str] = []
        self.protocol: str = scope.get("scheme", "http")

        self.query_string: str = scope.get("query_string", b"").decode("latin-1")
        self.query: Dict[str, Any] = querystring.parse_query_string(self.query_string)
        self._parsed_query = copy.deepcopy(self.query)

        self.body: Any = {}
        self.body_kind: Optional[str] = None
        self.raw_body: Optional[bytes] = None
        self._parsed_body: Any = None

        self.cookies: Dict[str, str] = {}
        self.params: Dict[str, Any] = {}
        self.route: Optional[Route] = None
        self._parsed_params: Dict[str, Any] = {}
        self.request_id: str = ""
        self.sanitized: List[str] = []
        self.polluted: Dict[str, Dict[str, Any]] = {}
        self.rate_limit: Any = None
        self.disconnected = False

        scope.setdefault("state", {})["envelope"] = self

    # ── Identity ──────────────────────────────────────────────────────────

    @property
    def original_url(self) -> str:
        """Path and query string exactly as the client sent them."""
        raw_path = self.scope.get("raw_path")
        path = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else self.path
        if self.query_string:
            return f"{path}?{self.query_string}"
        return path

    # ── Route parameters ──────────────────────────────────────────────────

    def bind_route(self, routes: Sequence[BaseRoute]) -> None:
        """
        Bind `params` from the route the router will dispatch to.

        Same selection as the router: the first full match, otherwise the
        first partial match (path matches, method does not). Only plain routes
        carry parameters; a mount or a miss leaves `params` empty.
        """
        chosen: Optional[Tuple[BaseRoute, Scope]] = None
        for route in routes:
            match, child_scope = route.matches(self.scope)
            if match == Match.FULL:
                chosen = (route, child_scope)
                break
            if match == Match.PARTIAL and chosen is None:
                chosen = (route, child_scope)

        if chosen is None or not isinstance(chosen[0], Route):
            return
        self.route = chosen[0]
        self.params = dict(chosen[1].get("path_params", {}))
        self._parsed_params = copy.deepcopy(self.params)

    # ── Body stream ───────────────────────────────────────────────────────

    async def receive(self) -> Message:
        message = await self._receive()
        if message["type"] == "http.disconnect":
            self.disconnected = True
        return message

    async def read_body(self, limit: Optional[int] = None, on_limit=None) -> bytes:
        """
        Read the whole request body from the ASGI receive channel.

        `on_limit(received)` is called (and must raise) as soon as more than
        `limit` bytes have arrived. A disconnect raises ClientDisconnect.
        """
        chunks = []
        received = 0
        while True:
            message = await self.receive()
            if message["type"] == "http.disconnect":
                raise ClientDisconnect()
            chunk = message.get("body", b"")
            received += len(chunk)
            if limit is not None and received > limit and on_limit is not None:
                on_limit(received)
            chunks.append(chunk)
            if not message.get("more_body", False):
                break
        return b"".join(chunks)

    def set_body(self, kind: str, raw: bytes, parsed: Any) -> None:
        self.body_kind = kind
        self.raw_body = raw
        self.body = parsed
        self._parsed_body = copy.deepcopy(parsed)

    # ── Write-back ────────────────────────────────────────────────────────

    def for_dispatch(self) -> Tuple[Scope, Receive]:
        """Scope and receive channel carrying the sanitized query and body."""
        scope = dict(self.scope)
        if self.protocol != scope.get("scheme", "http"):
            scope["scheme"] = self.protocol
        if self.route is not None and self.params != self._parsed_params:
            scope["path"] = self._rebuild_path()
        if self.query != self._parsed_query:
            scope["query_string"] = querystring.encode(self.query).encode("latin-1")

        if self.raw_body is None:
            return scope, self.receive

        payload = self.raw_body
        if self.body != self._parsed_body:
            payload = self._serialize_body()

        headers = [
            (name, value) for name, value in scope.get("headers", []) if name != b"content-length"
        ]
        headers.append((b"content-length", str(len(payload)).encode("latin-1")))
        scope["headers"] = headers
        return scope, _replay(payload, self.receive)

    def _rebuild_path(self) -> str:
        path, _ = replace_params(
            self.route.path_format, self.route.param_convertors, dict(self.params)
        )
        root_path = self.scope.get("root_path", "")
        if root_path and self.path.startswith(root_path):
            return root_path + path
        return path

    def _serialize_body(self) -> bytes:
        if self.body_kind == "json":
            return json.dumps(self.body, ensure_ascii=False).encode("utf-8")
        return querystring.encode(self.body or {}).encode("latin-1")


def _replay(payload: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": payload, "more_body": False}
        return await receive()

    return replay
