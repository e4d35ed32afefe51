"""
Ingress — Payload Sanitizer Chain
===================================

What:  Three passes over the parsed body, query and route parameters:

    1. Injection-key stripping   — removes mapping keys that start with the
                                   document store's operator character ('$'),
                                   optionally also keys containing '.'
    2. Script neutralization     — escapes '<' and '>' in string leaves
    3. Pollution resolution      — collapses repeated fields to their last
                                   value unless the field is whitelisted

How:   Each pass is a pure function returning a new structure, so re-running
       a pass on its own output changes nothing. The stages assign the
       result back to the envelope and record what changed.

Script neutralization leaves '&' alone: escaping it would turn '&lt;' into
'&amp;lt;' on a second pass.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from starlette.types import ASGIApp

from ingress.envelope import RequestEnvelope
from ingress.middleware.base import Stage

logger = logging.getLogger(__name__)

OPERATOR_PREFIX = "$"
SOURCES = ("body", "query", "params")


# ══════════════════════════════════════════════════════════════════════════
# Passes
# ══════════════════════════════════════════════════════════════════════════

def is_reserved_key(key: Any, strip_dotted: bool = False) -> bool:
    text = str(key)
    return text.startswith(OPERATOR_PREFIX) or (strip_dotted and "." in text)


def strip_injection_keys(
    data: Any,
    strip_dotted: bool = False,
    removed: Optional[List[str]] = None,
    _path: str = "",
) -> Any:
    """
    Return `data` without reserved keys, at any depth.

    Sibling keys are kept as they are. Paths of removed keys are appended to
    `removed` when given.
    """
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            location = f"{_path}.{key}" if _path else str(key)
            if is_reserved_key(key, strip_dotted):
                if removed is not None:
                    removed.append(location)
                continue
            cleaned[key] = strip_injection_keys(value, strip_dotted, removed, location)
        return cleaned
    if isinstance(data, list):
        return [
            strip_injection_keys(item, strip_dotted, removed, f"{_path}[{index}]")
            for index, item in enumerate(data)
        ]
    return data


def neutralize_markup(text: str) -> str:
    return text.replace("<", "&lt;").replace(">", "&gt;")


def neutralize_scripts(
    data: Any,
    changed: Optional[List[str]] = None,
    _path: str = "",
) -> Any:
    """Escape markup in every string leaf; numbers, booleans and None pass through."""
    if isinstance(data, str):
        escaped = neutralize_markup(data)
        if escaped != data and changed is not None:
            changed.append(_path)
        return escaped
    if isinstance(data, dict):
        return {
            key: neutralize_scripts(value, changed, f"{_path}.{key}" if _path else str(key))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [
            neutralize_scripts(item, changed, f"{_path}[{index}]")
            for index, item in enumerate(data)
        ]
    return data


def resolve_pollution(
    data: Dict[str, Any], whitelist: Iterable[str] = ()
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Collapse multi-valued top-level fields to their last value.

    Whitelisted fields keep their ordered values. Returns the resolved mapping
    and the original multi-values that were collapsed. An empty multi-value
    drops the field.
    """
    allowed = set(whitelist)
    resolved: Dict[str, Any] = {}
    polluted: Dict[str, Any] = {}
    for key, value in data.items():
        if not isinstance(value, list) or key in allowed:
            resolved[key] = value
            continue
        polluted[key] = value
        last = value
        while isinstance(last, list) and last:
            last = last[-1]
        if isinstance(last, list):
            continue
        resolved[key] = last
    return resolved, polluted


# ══════════════════════════════════════════════════════════════════════════
# Stages
# ══════════════════════════════════════════════════════════════════════════

class SanitizerStage(Stage):
    """Injection-key stripping followed by script neutralization."""

    name = "sanitizer"

    def __init__(self, strip_dotted_keys: bool = False):
        self.strip_dotted_keys = strip_dotted_keys

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        for source in SOURCES:
            value = getattr(envelope, source)
            removed: List[str] = []
            escaped: List[str] = []
            cleaned = strip_injection_keys(value, self.strip_dotted_keys, removed)
            cleaned = neutralize_scripts(cleaned, escaped)
            if not removed and not escaped:
                continue

            setattr(envelope, source, cleaned)
            envelope.sanitized.extend(f"removed {source}.{path}" for path in removed)
            envelope.sanitized.extend(f"escaped {source}.{path}" for path in escaped)
            if removed:
                logger.warning(
                    "[%s] Stripped reserved keys from %s from %s: %s",
                    envelope.request_id,
                    source,
                    envelope.client_ip,
                    ", ".join(removed),
                )
        return None


class ParameterPollutionStage(Stage):
    """
    Resolves repeated query fields, and repeated fields of urlencoded bodies.
    Collapsed values stay available on `envelope.polluted`.
    """

    name = "parameter_pollution"

    def __init__(self, whitelist: Iterable[str] = ()):
        self.whitelist = frozenset(whitelist)

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        envelope.query = self._resolve(envelope, "query", envelope.query)
        if envelope.body_kind == "form" and isinstance(envelope.body, dict):
            envelope.body = self._resolve(envelope, "body", envelope.body)
        return None

    def _resolve(self, envelope: RequestEnvelope, source: str, data: Dict[str, Any]) -> Dict[str, Any]:
        resolved, polluted = resolve_pollution(data, self.whitelist)
        if not polluted:
            return data
        envelope.polluted.setdefault(source, {}).update(polluted)
        logger.debug(
            "[%s] Collapsed repeated %s fields: %s",
            envelope.request_id,
            source,
            ", ".join(polluted),
        )
        return resolved
