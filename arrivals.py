# Filtering of StopMonitoring visits into a per-line/per-stop arrival table.

import datetime
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from stop_allowlist import AllowList, is_allowed
from visit_scan import (
    MalformedDocument,
    find_array_start,
    find_response_timestamp,
    iter_object_spans,
    parse_timestamp,
    strip_bom,
)

log = logging.getLogger("muni_proxy.arrivals")

VISIT_ARRAY_FIELD = "MonitoredStopVisit"
MAX_ARRIVALS_PER_STOP = 3
SCAN_MODES = ("stream", "full")

ArrivalTable = Dict[str, Dict[str, List[int]]]

_LINE_REF_RE = re.compile(r'"LineRef"\s*:\s*"([^"]+)"')
_ONE_MINUTE = datetime.timedelta(minutes=1)
_MISSING = object()


class RecordDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class DecodedVisit:
    line_id: str
    stop_id: str
    expected_arrival: Optional[datetime.datetime]
    aimed_arrival: Optional[datetime.datetime]

    @property
    def arrival_time(self) -> datetime.datetime:
        if self.expected_arrival is not None:
            return self.expected_arrival
        if self.aimed_arrival is None:
            raise RecordDecodeError("visit has no arrival time")
        return self.aimed_arrival


def match_line_ref(span: str) -> Optional[str]:
    match = _LINE_REF_RE.search(span)
    return match.group(1) if match else None


def cheap_match(span: str, allow: AllowList) -> bool:
    line_id = match_line_ref(span)
    return line_id is not None and line_id in allow


# Refs must be JSON strings; the textual pre-check only sees quoted values.
def _ref(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_time(call: Dict[str, Any], key: str) -> Optional[datetime.datetime]:
    value = call.get(key)
    if value is None or value == "":
        return None
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise RecordDecodeError(f"bad {key}: {value!r}") from exc


def visit_from_record(record: Any) -> DecodedVisit:
    if not isinstance(record, dict):
        raise RecordDecodeError("visit is not an object")
    journey = record.get("MonitoredVehicleJourney")
    if not isinstance(journey, dict):
        raise RecordDecodeError("visit has no MonitoredVehicleJourney")
    call = journey.get("MonitoredCall")
    if not isinstance(call, dict):
        raise RecordDecodeError("visit has no MonitoredCall")

    line_id = _ref(journey.get("LineRef"))
    stop_id = _ref(call.get("StopPointRef"))
    if line_id is None or stop_id is None:
        raise RecordDecodeError("visit is missing LineRef or StopPointRef")

    expected = _optional_time(call, "ExpectedArrivalTime")
    aimed = _optional_time(call, "AimedArrivalTime")
    if expected is None and aimed is None:
        raise RecordDecodeError("visit has no arrival time")
    return DecodedVisit(line_id, stop_id, expected, aimed)


def decode_visit(span: str) -> DecodedVisit:
    try:
        record = json.loads(span)
    except ValueError as exc:
        raise RecordDecodeError("visit is not valid JSON") from exc
    return visit_from_record(record)


def arrival_minutes(arrival: datetime.datetime, reference: datetime.datetime) -> int:
    return (arrival - reference) // _ONE_MINUTE


def _find_key(node: Any, key: str) -> Any:
    if isinstance(node, dict):
        if key in node:
            return node[key]
        children: Iterable[Any] = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return _MISSING
    for child in children:
        found = _find_key(child, key)
        if found is not _MISSING:
            return found
    return _MISSING


def _full_records(text: str) -> List[Any]:
    try:
        document = json.loads(text)
    except ValueError as exc:
        raise MalformedDocument("document is not valid JSON") from exc
    visits = _find_key(document, VISIT_ARRAY_FIELD)
    if visits is _MISSING:
        raise MalformedDocument(f"no {VISIT_ARRAY_FIELD} in document")
    if not isinstance(visits, list):
        raise MalformedDocument(f"{VISIT_ARRAY_FIELD} is not an array")
    return visits


def _stream_records(text: str, allow: AllowList) -> Iterable[str]:
    start = find_array_start(text, VISIT_ARRAY_FIELD)
    spans = (text[begin:end] for begin, end in iter_object_spans(text, start))
    return (span for span in spans if cheap_match(span, allow))


def build_arrival_table(
    text: str,
    allow: AllowList,
    *,
    max_per_stop: int = MAX_ARRIVALS_PER_STOP,
    mode: str = "stream",
) -> Tuple[ArrivalTable, datetime.datetime]:
    """Extract allow-listed arrivals from a raw StopMonitoring document.

    Minutes are measured from the document's ResponseTimestamp, not the
    local clock. Each (line, stop) list is ascending and holds at most
    max_per_stop entries. Raises MalformedDocument when the timestamp or
    the visit array is missing; single bad records are skipped.
    """
    if mode not in SCAN_MODES:
        raise ValueError(f"unknown scan mode: {mode}")

    text = strip_bom(text)
    reference = find_response_timestamp(text)

    candidates: Iterable[Any]
    decode: Callable[[Any], DecodedVisit]
    if mode == "full":
        candidates = _full_records(text)
        decode = visit_from_record
    else:
        candidates = _stream_records(text, allow)
        decode = decode_visit

    table: ArrivalTable = {}
    skipped = 0
    for candidate in candidates:
        try:
            visit = decode(candidate)
        except RecordDecodeError:
            skipped += 1
            continue
        if not is_allowed(allow, visit.line_id, visit.stop_id):
            continue
        minutes = arrival_minutes(visit.arrival_time, reference)
        if minutes < 0:
            continue
        table.setdefault(visit.line_id, {}).setdefault(visit.stop_id, []).append(minutes)

    for stops in table.values():
        for values in stops.values():
            values.sort()
            del values[max_per_stop:]

    if skipped:
        log.debug("Skipped %d undecodable visits", skipped)
    return table, reference
