# Fixed (line, stop) allow-list for the SFMTA arrivals feed.

import json
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping

AllowList = Mapping[str, FrozenSet[str]]


DEFAULT_ALLOWED_STOPS: Dict[str, Iterable[str]] = {
    "24": [
        "15147", "14429", "14330", "14315", "13521", "14143", "15882", "15878",
        "14624", "14428", "14331", "14314", "13520", "14142", "15881", "15490",
    ],
    "23": [
        "17208", "16436", "14386", "14192", "14200", "15882", "15864", "15865",
        "16453", "16435", "14387", "14198", "14203", "15881", "15863", "15776",
    ],
    "49": [
        "16819", "18102", "18104", "15836", "15552", "15566", "15572", "15614",
        "15782", "17804", "15926", "16820", "18091", "18089", "15546", "15551",
        "15565", "15571", "15613", "15783", "15781", "15791",
    ],
    "14": [
        "16498", "15529", "15536", "15543", "15836", "15552", "15566", "15572",
        "15614", "15592", "15588", "15693", "15530", "15535", "15542", "17299",
        "15551", "15565", "15571", "15613", "15593", "17099",
    ],
    "14R": [
        "16498", "15529", "15536", "15552", "15566", "15572", "15614", "15592",
        "15588", "15693", "15530", "15535", "15551", "15565", "15571", "15613",
        "15593",
    ],
    "67": [
        "17532", "17746", "14686", "17924", "14688", "14690", "13476", "17552",
        "14697", "13710", "14687", "14568",
    ],
    "J": [
        "17217", "16994", "16995", "16997", "16996", "18059", "16214", "18156",
        "16280", "14788", "15418", "16992", "15731", "15417", "15727", "15419",
        "14006", "16215", "18155", "16277", "14787", "17778",
    ],
}


class InvalidAllowList(ValueError):
    pass


def build_allow_list(mapping: Any) -> AllowList:
    if not isinstance(mapping, Mapping):
        raise InvalidAllowList("allow-list must be an object of line -> stops")

    allow: Dict[str, FrozenSet[str]] = {}
    for line, stops in mapping.items():
        if isinstance(stops, (str, bytes)) or not isinstance(stops, Iterable):
            raise InvalidAllowList(f"stops for line {line!r} must be a list")
        line_id = str(line).strip()
        stop_ids = frozenset(str(stop).strip() for stop in stops if str(stop).strip())
        if line_id and stop_ids:
            allow[line_id] = stop_ids
    return MappingProxyType(allow)


def load_allow_list(path: str) -> AllowList:
    try:
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, ValueError) as exc:
        raise InvalidAllowList(f"cannot read allow-list {path}: {exc}") from exc
    return build_allow_list(raw)


def is_allowed(allow: AllowList, line_id: str, stop_id: str) -> bool:
    stops = allow.get(line_id)
    return stops is not None and stop_id in stops
