"""
Ingress — Body Parser and Envelope Unit Tests
===============================================

What:  JSON nesting limits, route parameter binding and the scope write-back.

Test Strategy:
    ✅ Nesting is counted without parsing, ignoring brackets inside strings
    ✅ Over-deep JSON is a 400 client fault, never a recursion crash
    ✅ Route parameters are bound from the route the router will pick
    ✅ Changed parameters and a trusted scheme reach the dispatch scope
"""

from unittest.mock import patch

import pytest
from starlette.responses import PlainTextResponse
from starlette.routing import Mount, Route, Router

from ingress.exceptions import MalformedBodyError
from ingress.middleware.body import MAX_JSON_DEPTH, BodyParserStage, json_depth


async def _endpoint(request):
    return PlainTextResponse("ok")


def nested(depth: int) -> str:
    return "[" * depth + "]" * depth


class TestJsonDepth:
    def test_flat_document(self):
        assert json_depth('{"a": 1}') == 1

    def test_mixed_nesting(self):
        assert json_depth('{"a": [{"b": [1]}], "c": {}}') == 4

    def test_brackets_inside_strings_ignored(self):
        assert json_depth('{"a": "[[[{{{"}') == 1

    def test_escaped_quote_stays_in_string(self):
        assert json_depth('{"a": "say \\"[[\\" twice"}') == 1

    def test_deep_array(self):
        assert json_depth(nested(950)) == 950


class TestJsonParsing:
    """Strict JSON bodies through BodyParserStage._parse_json."""

    def test_depth_at_limit_accepted(self):
        assert BodyParserStage()._parse_json(nested(MAX_JSON_DEPTH).encode()) is not None

    def test_depth_over_limit_rejected(self):
        with pytest.raises(MalformedBodyError, match="nested too deeply"):
            BodyParserStage()._parse_json(nested(MAX_JSON_DEPTH + 1).encode())

    def test_recursion_error_is_client_fault(self):
        """A parser that still runs out of stack reports a malformed body."""
        with patch("ingress.middleware.body.json.loads", side_effect=RecursionError("too deep")):
            with pytest.raises(MalformedBodyError) as exc_info:
                BodyParserStage()._parse_json(b'{"a": 1}')
        assert exc_info.value.status_code == 400
        assert exc_info.value.operational is True


class TestRouteBinding:
    """RequestEnvelope.bind_route against a plain Starlette router."""

    def router(self):
        return Router(
            routes=[
                Route("/tours/top-5-cheap", _endpoint),
                Route("/tours/{name}", _endpoint),
                Route("/tours/{tour_id:int}/reviews", _endpoint, methods=["POST"]),
                Mount("/assets", routes=[Route("/{file}", _endpoint)]),
            ]
        )

    def test_params_from_matching_route(self, make_envelope):
        envelope = make_envelope(path="/tours/<b>forest</b>")
        envelope.bind_route(self.router().routes)
        assert envelope.params == {"name": "<b>forest</b>"}
        assert envelope.route.path == "/tours/{name}"

    def test_first_full_match_wins(self, make_envelope):
        envelope = make_envelope(path="/tours/top-5-cheap")
        envelope.bind_route(self.router().routes)
        assert envelope.params == {}
        assert envelope.route.path == "/tours/top-5-cheap"

    def test_partial_match_binds_converted_params(self, make_envelope):
        envelope = make_envelope(path="/tours/7/reviews")
        envelope.bind_route(self.router().routes)
        assert envelope.params == {"tour_id": 7}

    def test_mount_and_miss_leave_params_empty(self, make_envelope):
        for path in ("/assets/logo.png", "/nowhere/at/all"):
            envelope = make_envelope(path=path)
            envelope.bind_route(self.router().routes)
            assert envelope.params == {}
            assert envelope.route is None

    def test_unchanged_params_keep_path(self, make_envelope):
        envelope = make_envelope(path="/tours/forest")
        envelope.bind_route(self.router().routes)
        scope, _ = envelope.for_dispatch()
        assert scope["path"] == "/tours/forest"

    def test_changed_params_rebuild_path(self, make_envelope):
        envelope = make_envelope(path="/tours/<b>")
        envelope.bind_route(self.router().routes)
        envelope.params = {"name": "&lt;b&gt;"}
        scope, _ = envelope.for_dispatch()
        assert scope["path"] == "/tours/&lt;b&gt;"
        assert envelope.scope["path"] == "/tours/<b>"


class TestSchemeWriteBack:
    def test_trusted_protocol_reaches_scope(self, make_envelope):
        envelope = make_envelope()
        envelope.protocol = "https"
        scope, _ = envelope.for_dispatch()
        assert scope["scheme"] == "https"

    def test_socket_scheme_kept_by_default(self, make_envelope):
        scope, _ = make_envelope().for_dispatch()
        assert scope["scheme"] == "http"
