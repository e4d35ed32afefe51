"""
Ingress — Extended Query String Codec
=======================================

What:  Parses query strings and urlencoded bodies into nested structures and
       encodes them back.
How:   Bracket notation nests (`price[gte]=5` → {"price": {"gte": "5"}}),
       empty brackets append (`tags[]=a&tags[]=b` → {"tags": ["a", "b"]}),
       numeric indices build lists, and a plain key repeated in the input
       becomes an ordered multi-value (`d=easy&d=hard` → {"d": ["easy", "hard"]}).
       Nesting deeper than MAX_DEPTH is kept as a literal key segment.

Encoding is the inverse used to write sanitized values back into the request:
scalar lists are emitted as repeated keys, nested mappings in bracket form.
"""

import re
from typing import Any, Dict, Iterable, List, Tuple
from urllib.parse import parse_qsl, urlencode

MAX_DEPTH = 5
ARRAY_LIMIT = 20

_SEGMENT = re.compile(r"\[([^\[\]]*)\]")


def split_key(key: str, depth: int = MAX_DEPTH) -> List[str]:
    """Split `a[b][c]` into ['a', 'b', 'c'], keeping anything past `depth` literal."""
    bracket = key.find("[")
    if bracket <= 0:
        return [key]

    head, rest = key[:bracket], key[bracket:]
    segments = [head]
    pos = 0
    while pos < len(rest) and len(segments) <= depth:
        match = _SEGMENT.match(rest, pos)
        if match is None:
            break
        segments.append(match.group(1))
        pos = match.end()

    if len(segments) == 1:
        return [key]
    if pos < len(rest):
        segments.append(rest[pos:])
    return segments


def parse_pairs(pairs: Iterable[Tuple[str, str]], depth: int = MAX_DEPTH) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        _assign(result, split_key(key, depth), value)
    return {key: _compact(value) for key, value in result.items()}


def parse_query_string(query_string: str, depth: int = MAX_DEPTH) -> Dict[str, Any]:
    """Parse a raw (percent-encoded) query string or urlencoded body."""
    if not query_string:
        return {}
    return parse_pairs(parse_qsl(query_string, keep_blank_values=True), depth)


def flatten(data: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, dict):
            pairs.extend(flatten(value, name))
        elif isinstance(value, list):
            for index, item in enumerate(value):
                if isinstance(item, (dict, list)):
                    pairs.extend(flatten({str(index): item}, name))
                else:
                    pairs.append((name, _text(item)))
        else:
            pairs.append((name, _text(value)))
    return pairs


def encode(data: Dict[str, Any]) -> str:
    return urlencode(flatten(data))


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _assign(target: Dict[str, Any], segments: List[str], value: str) -> None:
    key, rest = segments[0], segments[1:]
    if not rest:
        _merge_leaf(target, key, value)
        return

    existing = target.get(key)
    if rest[0] == "":
        items = existing if isinstance(existing, list) else ([] if existing is None else [existing])
        target[key] = items
        if len(rest) == 1:
            items.append(value)
        else:
            node: Dict[str, Any] = {}
            _assign(node, rest[1:], value)
            items.append(node)
        return

    if isinstance(existing, dict):
        node = existing
    else:
        node = {}
        if existing is None:
            target[key] = node
        else:
            target[key] = (existing if isinstance(existing, list) else [existing]) + [node]
    _assign(node, rest, value)


def _merge_leaf(target: Dict[str, Any], key: str, value: str) -> None:
    if key not in target:
        target[key] = value
    elif isinstance(target[key], list):
        target[key].append(value)
    else:
        target[key] = [target[key], value]


def _compact(node: Any) -> Any:
    """Turn mappings keyed by small integers (`a[0]`, `a[1]`) into lists."""
    if isinstance(node, list):
        return [_compact(item) for item in node]
    if not isinstance(node, dict):
        return node

    compacted = {key: _compact(value) for key, value in node.items()}
    if compacted and all(key.isdigit() and int(key) <= ARRAY_LIMIT for key in compacted):
        return [compacted[key] for key in sorted(compacted, key=int)]
    return compacted
