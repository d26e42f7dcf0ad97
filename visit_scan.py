# Incremental scanner for the StopMonitoring document.
#
# Only object boundaries inside the visit array are found here; decoding is
# left to the caller so irrelevant records never hit json.loads.

import datetime
import re
from typing import Iterator, Tuple

BOM = "\ufeff"

_SEPARATORS = frozenset(" \t\r\n,")
_TIMESTAMP_RE = re.compile(r'"ResponseTimestamp"\s*:\s*"([^"]+)"')


class MalformedDocument(ValueError):
    pass


def strip_bom(text: str) -> str:
    if text.startswith(BOM):
        return text[1:]
    return text


def parse_timestamp(value: str) -> datetime.datetime:
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    parsed = datetime.datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def find_response_timestamp(text: str) -> datetime.datetime:
    match = _TIMESTAMP_RE.search(text)
    if match is None:
        raise MalformedDocument("no ResponseTimestamp in document")
    try:
        return parse_timestamp(match.group(1))
    except ValueError as exc:
        raise MalformedDocument(f"bad ResponseTimestamp {match.group(1)!r}") from exc


def find_array_start(text: str, field: str) -> int:
    match = re.search(r'"%s"\s*:\s*' % re.escape(field), text)
    if match is None:
        raise MalformedDocument(f"no {field} in document")
    pos = match.end()
    if pos >= len(text) or text[pos] != "[":
        raise MalformedDocument(f"{field} is not an array")
    return pos


def find_closing_brace(text: str, open_pos: int) -> int:
    """Return the offset of the '}' matching the '{' at open_pos, or -1.

    Braces inside string literals are ignored; a backslash inside a string
    consumes the following character, so escaped quotes never close it.
    """
    depth = 1
    in_string = False
    i = open_pos + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if in_string:
            if ch == "\\":
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _skip_element(text: str, pos: int) -> int:
    """Return the offset of the ',' or ']' that ends the array element at pos.

    Returns -1 at end of text or on an unbalanced '}'.
    """
    depth = 0
    in_string = False
    i = pos
    n = len(text)
    while i < n:
        ch = text[i]
        if in_string:
            if ch == "\\":
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "[{":
            depth += 1
        elif ch in "]}":
            if depth == 0:
                return i if ch == "]" else -1
            depth -= 1
        elif ch == "," and depth == 0:
            return i
        i += 1
    return -1


def iter_object_spans(text: str, array_start: int) -> Iterator[Tuple[int, int]]:
    """Yield half-open (start, end) spans of each object in the array at array_start.

    Elements that are not objects (null, numbers, strings, nested arrays)
    are stepped over. Stops at the array's closing ']' or at end of text;
    an object left open at end of text is dropped rather than yielded
    partially.
    """
    pos = array_start + 1
    n = len(text)
    while pos < n:
        ch = text[pos]
        if ch in _SEPARATORS:
            pos += 1
            continue
        if ch == "]":
            return
        if ch != "{":
            pos = _skip_element(text, pos)
            if pos == -1:
                return
            continue
        end = find_closing_brace(text, pos)
        if end == -1:
            return
        yield pos, end + 1
        pos = end + 1


def iter_visit_texts(text: str, field: str) -> Iterator[str]:
    start = find_array_start(text, field)
    for begin, end in iter_object_spans(text, start):
        yield text[begin:end]
