import json

from trendscan.ops.context import clear_cycle_id, new_cycle_id, set_cycle_id
from trendscan.persistence.audit import Audit


def test_events_are_written_as_jsonl_with_cycle_id(tmp_path):
    path = tmp_path / "nested" / "audit.jsonl"
    audit = Audit(str(path))
    cid = new_cycle_id("scan")
    set_cycle_id(cid)
    try:
        audit.event("SIGNAL_ACCEPTED", symbol="BTCUSDT", action="LONG", details={"price": 1.5})
    finally:
        clear_cycle_id()
    audit.event("SCAN_CYCLE_END")

    lines = [json.loads(x) for x in path.read_text(encoding="utf-8").splitlines()]
    assert [e["event_type"] for e in lines] == ["SIGNAL_ACCEPTED", "SCAN_CYCLE_END"]
    assert lines[0]["cycle_id"] == cid
    assert cid.startswith("scan")
    assert lines[1]["cycle_id"] is None
    assert lines[0]["details"] == {"price": 1.5}


def test_memory_tail_is_bounded_and_filterable():
    audit = Audit(None, memory_size=3)
    for i in range(5):
        audit.event("A" if i % 2 else "B", details={"i": i})

    assert [e["details"]["i"] for e in audit.tail()] == [2, 3, 4]
    assert [e["details"]["i"] for e in audit.tail(event_type="A")] == [3]
    assert audit.tail(limit=0) == []
