import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from cronwatch.models import IssueStatus
from cronwatch.utils import isoformat_utc, json_dumps, json_loads, parse_iso, slugify


@dataclass
class Payload:
    value: str


def test_slugify():
    assert slugify("Pier 26 Reopens!") == "pier-26-reopens"
    assert slugify("Café Crème") == "cafe-creme"
    assert slugify("") == "untitled"
    assert slugify("!!!") == "untitled"
    assert slugify("a" * 100, max_length=10) == "a" * 10


def test_isoformat_utc_normalizes_offsets():
    eastern = timezone(timedelta(hours=-4))
    assert isoformat_utc(datetime(2026, 10, 19, 10, 0, 30, 500, tzinfo=eastern)) == "2026-10-19T14:00:30+00:00"
    assert isoformat_utc(datetime(2026, 10, 19, 14, 0)) == "2026-10-19T14:00:00+00:00"


def test_parse_iso():
    assert parse_iso(None) is None
    assert parse_iso("") is None
    assert parse_iso("not a date") is None
    assert parse_iso("2026-10-19T14:00:00Z") == datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)
    assert parse_iso("2026-10-19T10:00:00-04:00") == datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)
    assert parse_iso("2026-10-19 14:00:00") == datetime(2026, 10, 19, 14, 0, tzinfo=timezone.utc)


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Payload(value="ok"),
        "enum": IssueStatus.NEEDS_MANUAL,
        "datetime": datetime(2026, 10, 19, tzinfo=timezone.utc),
        "date": date(2026, 10, 18),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["enum"] == "needs_manual"
    assert decoded["datetime"].startswith("2026-10-19T00:00:00")
    assert decoded["date"] == "2026-10-18"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_json_loads_falls_back_to_default():
    assert json_loads(None, []) == []
    assert json_loads("", {}) == {}
    assert json_loads("{broken", {"x": 1}) == {"x": 1}
    assert json_loads('["a"]', []) == ["a"]
