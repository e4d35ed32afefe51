"""
Ingress — Body and Cookie Parsing Stages
==========================================

What:  Reads and parses JSON and urlencoded request bodies under a hard byte
       ceiling, and parses the Cookie header.
How:   Only JSON (`application/json`, `*+json`) and urlencoded bodies are
       read; any other content type streams through to the router untouched.
       The declared Content-Length is checked first, then the bytes actually
       received, so a lying or chunked client cannot get past the ceiling.

Parsing rules:
    JSON:        strict, top level must be an object or array; empty body → {};
                 nesting deeper than MAX_JSON_DEPTH is rejected before parsing
    urlencoded:  extended bracket notation (see ingress.querystring)
    Faults:      413 PayloadTooLargeError above the limit,
                 400 MalformedBodyError for undecodable / invalid bodies
"""

import json
import logging
from typing import Any, Optional

from starlette.requests import cookie_parser
from starlette.types import ASGIApp

from ingress import querystring
from ingress.envelope import RequestEnvelope
from ingress.exceptions import MalformedBodyError, PayloadTooLargeError
from ingress.middleware.base import Stage

logger = logging.getLogger(__name__)

FORM_TYPE = "application/x-www-form-urlencoded"

# Deepest array/object nesting accepted in a JSON body; the sanitizer passes
# recurse once per level
MAX_JSON_DEPTH = 32


def json_depth(text: str) -> int:
    """Maximum array/object nesting of a JSON document, counted without parsing it."""
    depth = deepest = 0
    in_string = escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char in "[{":
            depth += 1
            deepest = max(deepest, depth)
        elif char in "]}":
            depth -= 1
    return deepest


def body_kind(content_type: str) -> Optional[str]:
    """'json', 'form' or None for the given Content-Type header value."""
    media_type = content_type.split(";")[0].strip().lower()
    if media_type == "application/json" or media_type.endswith("+json"):
        return "json"
    if media_type == FORM_TYPE:
        return "form"
    return None


class BodyParserStage(Stage):
    name = "body_parser"

    def __init__(self, limit: int = 10 * 1024):
        self.limit = limit

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        kind = body_kind(envelope.headers.get("content-type", ""))
        if kind is None or not self._has_body(envelope):
            return None

        declared = envelope.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.limit:
            raise PayloadTooLargeError(self.limit, int(declared))

        raw = await envelope.read_body(limit=self.limit, on_limit=self._too_large)
        if kind == "json":
            envelope.set_body(kind, raw, self._parse_json(raw))
        else:
            envelope.set_body(kind, raw, querystring.parse_query_string(self._decode(raw)))
        return None

    def _too_large(self, received: int) -> None:
        raise PayloadTooLargeError(self.limit, received)

    @staticmethod
    def _has_body(envelope: RequestEnvelope) -> bool:
        if "transfer-encoding" in envelope.headers:
            return True
        return envelope.headers.get("content-length", "0") not in ("", "0")

    @staticmethod
    def _decode(raw: bytes) -> str:
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedBodyError(
                "Request body is not valid UTF-8", context={"error": str(e)}
            ) from e

    def _parse_json(self, raw: bytes) -> Any:
        text = self._decode(raw).strip()
        if not text:
            return {}
        if text[0] not in "{[":
            raise MalformedBodyError("JSON body must be an object or an array")
        if json_depth(text) > MAX_JSON_DEPTH:
            raise MalformedBodyError(
                f"JSON body is nested too deeply (maximum depth is {MAX_JSON_DEPTH})"
            )
        try:
            return json.loads(text)
        except (ValueError, RecursionError) as e:
            raise MalformedBodyError("Invalid JSON payload", context={"error": str(e)}) from e


class CookieParserStage(Stage):
    name = "cookie_parser"

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        header = envelope.headers.get("cookie")
        if header:
            envelope.cookies = cookie_parser(header)
        return None
