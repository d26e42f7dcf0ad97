import datetime
import json
import random

import pytest

import arrivals
from arrivals import (
    RecordDecodeError,
    arrival_minutes,
    build_arrival_table,
    cheap_match,
    decode_visit,
    match_line_ref,
)
from sample_feed import RESPONSE_TS, at, document, visit
from stop_allowlist import build_allow_list
from visit_scan import MalformedDocument

ALLOW = build_allow_list({"24": ["15147", "14429"], "J": ["17217"], "14R": ["16498"]})


def table_for(visits, **kwargs):
    table, _ = build_arrival_table(document(visits), ALLOW, **kwargs)
    return table


def test_two_visits_and_unlisted_stop():
    table = table_for(
        [
            visit("24", "15147", 12),
            visit("24", "99999", 3),
            visit("24", "15147", 5),
        ]
    )
    assert table == {"24": {"15147": [5, 12]}}


def test_bucket_capped_at_three_smallest():
    table = table_for([visit("J", "17217", m) for m in (5, 3, 1, 4, 2)])
    assert table == {"J": {"17217": [1, 2, 3]}}


def test_custom_cap():
    table = table_for([visit("J", "17217", m) for m in (5, 3, 1)], max_per_stop=1)
    assert table == {"J": {"17217": [1]}}


def test_zero_minutes_kept_past_dropped():
    table = table_for(
        [
            visit("24", "15147", 0),
            visit("24", "15147", -1),
            visit("24", "15147", -0.5),
            visit("24", "14429", 0.99),
        ]
    )
    assert table == {"24": {"15147": [0], "14429": [0]}}


def test_minutes_are_measured_from_response_timestamp():
    visits = [visit("24", "15147", 10)]
    table, reference = build_arrival_table(document(visits, ts=at(4)), ALLOW)
    assert table == {"24": {"15147": [6]}}
    assert reference == datetime.datetime(2024, 5, 1, 12, 4, tzinfo=datetime.timezone.utc)


def test_aimed_time_used_when_expected_missing():
    table = table_for(
        [
            visit("24", "15147", aimed_minutes=7),
            visit("24", "15147", 2, aimed_minutes=9),
        ]
    )
    assert table == {"24": {"15147": [2, 7]}}


def test_empty_expected_falls_back_to_aimed():
    record = visit("24", "15147", aimed_minutes=4)
    record["MonitoredVehicleJourney"]["MonitoredCall"]["ExpectedArrivalTime"] = ""
    assert table_for([record]) == {"24": {"15147": [4]}}


def test_visit_without_any_time_is_skipped():
    assert table_for([visit("24", "15147")]) == {}


def test_unlisted_lines_are_never_decoded(monkeypatch):
    decoded = []
    real_decode = arrivals.decode_visit

    def spy(span):
        decoded.append(span)
        return real_decode(span)

    monkeypatch.setattr(arrivals, "decode_visit", spy)
    table = table_for([visit("38", "15147", 3), visit("24", "15147", 4), visit("N", "1", 2)])

    assert table == {"24": {"15147": [4]}}
    assert len(decoded) == 1
    assert '"LineRef": "24"' in decoded[0]


def test_strings_with_braces_and_quotes_do_not_break_scan():
    visits = [
        visit("24", "15147", 3, destination='Ferry "Bldg" {north}'),
        visit("24", "15147", 8, destination="}}}"),
        visit("J", "17217", 1, destination='back\\slash"{'),
    ]
    assert table_for(visits) == {"24": {"15147": [3, 8]}, "J": {"17217": [1]}}


def test_bad_records_are_skipped():
    good = json.dumps(visit("24", "15147", 6))
    bad_json = (
        '{"MonitoredVehicleJourney": {"LineRef": "24", "MonitoredCall": '
        '{"StopPointRef": "15147", "ExpectedArrivalTime": tru}}}'
    )
    bad_time = json.dumps(visit("24", "15147", 2)).replace(at(2), "not-a-time")
    no_call = '{"MonitoredVehicleJourney": {"LineRef": "24"}}'
    text = (
        '{"ServiceDelivery": {"ResponseTimestamp": "%s", "StopMonitoringDelivery": '
        '{"MonitoredStopVisit": [%s, %s, %s, %s]}}}'
        % (RESPONSE_TS, bad_json, bad_time, no_call, good)
    )
    table, _ = build_arrival_table(text, ALLOW)
    assert table == {"24": {"15147": [6]}}


def test_byte_order_mark_is_stripped():
    text = document([visit("24", "15147", 5)], bom=True)
    table, _ = build_arrival_table(text, ALLOW)
    assert table == {"24": {"15147": [5]}}


def test_missing_visit_array_aborts():
    text = '{"ServiceDelivery": {"ResponseTimestamp": "%s"}}' % RESPONSE_TS
    with pytest.raises(MalformedDocument):
        build_arrival_table(text, ALLOW)


def test_missing_timestamp_aborts():
    text = document([visit("24", "15147", 5)]).replace("ResponseTimestamp", "Stamp")
    with pytest.raises(MalformedDocument):
        build_arrival_table(text, ALLOW)


def test_empty_visit_array_gives_empty_table():
    assert table_for([]) == {}


def test_same_document_gives_identical_output():
    visits = [visit("24", "15147", m) for m in (9, 1, 4)] + [visit("J", "17217", 2)]
    text = document(visits)
    first, _ = build_arrival_table(text, ALLOW)
    second, _ = build_arrival_table(text, ALLOW)
    assert json.dumps(first) == json.dumps(second)


def test_full_mode_matches_stream_mode():
    visits = [
        visit("24", "15147", 12),
        visit("24", "99999", 3),
        visit("38", "15147", 1),
        visit("J", "17217", aimed_minutes=6),
        visit("14R", "16498", -2),
    ] + [visit("24", "14429", m) for m in (7, 5, 3, 1)]
    text = document(visits)
    stream, _ = build_arrival_table(text, ALLOW, mode="stream")
    full, _ = build_arrival_table(text, ALLOW, mode="full")
    assert stream == full
    assert full == {"24": {"15147": [12], "14429": [1, 3, 5]}, "J": {"17217": [6]}}


def test_full_mode_rejects_invalid_json():
    text = document([visit("24", "15147", 5)])[:-3]
    with pytest.raises(MalformedDocument):
        build_arrival_table(text, ALLOW, mode="full")


def test_unknown_mode():
    with pytest.raises(ValueError):
        build_arrival_table(document([]), ALLOW, mode="turbo")


def test_random_documents_respect_allow_list_and_ordering():
    rng = random.Random(7)
    lines = ["24", "J", "14R", "38", "N"]
    stops = ["15147", "14429", "17217", "16498", "99999"]
    visits = [
        visit(rng.choice(lines), rng.choice(stops), rng.randint(-10, 60))
        for _ in range(300)
    ]
    table = table_for(visits)

    assert table
    for line_id, by_stop in table.items():
        for stop_id, minutes in by_stop.items():
            assert stop_id in ALLOW[line_id]
            assert minutes == sorted(minutes)
            assert 1 <= len(minutes) <= 3
            assert all(m >= 0 for m in minutes)


def test_cheap_match():
    span = json.dumps(visit("24", "15147", 1))
    assert match_line_ref(span) == "24"
    assert cheap_match(span, ALLOW)
    assert not cheap_match(json.dumps(visit("38", "15147", 1)), ALLOW)
    assert not cheap_match('{"Other": 1}', ALLOW)


def test_decode_visit():
    decoded = decode_visit(json.dumps(visit("24", "15147", 3, aimed_minutes=2)))
    assert decoded.line_id == "24"
    assert decoded.stop_id == "15147"
    assert decoded.arrival_time == decoded.expected_arrival
    assert decoded.aimed_arrival is not None

    with pytest.raises(RecordDecodeError):
        decode_visit("{not json}")
    with pytest.raises(RecordDecodeError):
        decode_visit('{"MonitoredVehicleJourney": {"LineRef": "24", "MonitoredCall": {}}}')


def test_arrival_minutes_floors():
    ref = datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc)
    assert arrival_minutes(ref, ref) == 0
    assert arrival_minutes(ref + datetime.timedelta(seconds=119), ref) == 1
    assert arrival_minutes(ref - datetime.timedelta(seconds=1), ref) == -1
    assert arrival_minutes(ref - datetime.timedelta(minutes=1), ref) == -1


def test_non_object_elements_do_not_cut_the_scan():
    visits = [visit("24", "15147", 3), None, 5, "x", [], visit("24", "15147", 8)]
    text = document(visits)
    stream, _ = build_arrival_table(text, ALLOW, mode="stream")
    full, _ = build_arrival_table(text, ALLOW, mode="full")
    assert stream == full == {"24": {"15147": [3, 8]}}


def test_numeric_refs_are_rejected_in_both_modes():
    numeric_line = visit("24", "15147", 4)
    numeric_line["MonitoredVehicleJourney"]["LineRef"] = 24
    numeric_stop = visit("J", "17217", 2)
    numeric_stop["MonitoredVehicleJourney"]["MonitoredCall"]["StopPointRef"] = 17217
    text = document([numeric_line, numeric_stop, visit("24", "14429", 6)])

    stream, _ = build_arrival_table(text, ALLOW, mode="stream")
    full, _ = build_arrival_table(text, ALLOW, mode="full")
    assert stream == full == {"24": {"14429": [6]}}
