import asyncio
import json

import pytest

from tripfinder.delay_store import DelayLogError, DelayStore
from tripfinder.models import Coordinate

RYNEK = Coordinate(lat=50.0617, lng=19.9373)


async def test_missing_file_is_an_empty_log(tmp_path):
    store = DelayStore(tmp_path / "delays.json")
    assert await store.list_reports() == []


async def test_empty_or_corrupt_file_is_an_empty_log(tmp_path):
    path = tmp_path / "delays.json"
    store = DelayStore(path)

    path.write_text("")
    assert await store.list_reports() == []

    path.write_text("{not json")
    assert await store.list_reports() == []

    path.write_text('{"id": "1"}')
    assert await store.list_reports() == []


async def test_append_assigns_id_and_timestamp(tmp_path):
    store = DelayStore(tmp_path / "delays.json")
    report = await store.append("Wypadek", "RP901", RYNEK)

    assert report.id.isdigit()
    assert report.cause == "Wypadek"
    assert report.vehicle_number == "RP901"
    assert report.location == RYNEK
    assert report.timestamp.endswith("+00:00")

    assert await store.list_reports() == [report]


async def test_reports_are_persisted_as_camel_case_json(tmp_path):
    path = tmp_path / "delays.json"
    store = DelayStore(path)
    await store.append("Awaria", "", RYNEK)

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert len(saved) == 1
    assert saved[0]["vehicleNumber"] == ""
    assert saved[0]["location"] == {"lat": 50.0617, "lng": 19.9373}

    # A fresh store over the same file sees the report
    assert len(await DelayStore(path).list_reports()) == 1


async def test_concurrent_appends_are_all_kept(tmp_path):
    store = DelayStore(tmp_path / "delays.json")
    await asyncio.gather(*(store.append(f"cause {i}", str(i), RYNEK) for i in range(10)))

    reports = await store.list_reports()
    assert len(reports) == 10
    assert {r.cause for r in reports} == {f"cause {i}" for i in range(10)}
    assert len({r.id for r in reports}) == 10


async def test_missing_parent_directory_is_created(tmp_path):
    store = DelayStore(tmp_path / "data" / "delays.json")
    await store.append("Objazd", "", RYNEK)
    assert (tmp_path / "data" / "delays.json").exists()


async def test_entries_that_do_not_validate_survive_an_append(tmp_path):
    path = tmp_path / "delays.json"
    path.write_text(json.dumps([
        {"id": "100", "cause": "Wypadek", "vehicleNumber": 456,
         "location": {"lat": 50.06, "lng": 19.94}, "timestamp": "2026-10-19T08:00:00+00:00"},
        {"id": "101", "cause": "Objazd"},
    ]), encoding="utf-8")
    store = DelayStore(path)

    # The numeric vehicle number is read as text; the incomplete entry is skipped
    listed = await store.list_reports()
    assert [(r.id, r.vehicle_number) for r in listed] == [("100", "456")]

    report = await store.append("Awaria", "RP901", RYNEK)

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert [entry["id"] for entry in saved] == ["100", "101", report.id]
    assert saved[1] == {"id": "101", "cause": "Objazd"}
    assert saved[0]["vehicleNumber"] == 456
    assert int(report.id) > 101


async def test_unparseable_log_is_never_overwritten(tmp_path):
    path = tmp_path / "delays.json"
    path.write_text("[{broken", encoding="utf-8")
    store = DelayStore(path)

    with pytest.raises(DelayLogError):
        await store.append("Awaria", "", RYNEK)
    assert path.read_text(encoding="utf-8") == "[{broken"
