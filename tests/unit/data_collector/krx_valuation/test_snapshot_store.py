import json

import pytest

from src.data_collector.krx_valuation.snapshot_store import ResultSnapshotStore
from tests._fixtures import build_result


@pytest.mark.unit
def test_save_then_load_preserves_order(tmp_path):
    store = ResultSnapshotStore(path=tmp_path / "data" / "all_safety_margin_results.json")
    results = [build_result("000003", 42.5), build_result("000001", 3.0), build_result("000002", None)]

    store.save(results)

    assert [r.code for r in store.load()] == ["000003", "000001", "000002"]
    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert raw[0]["safety_margin"] == 42.5
    assert "last_updated" in raw[0]
    assert list(store.path.parent.glob("*.tmp")) == []


@pytest.mark.unit
def test_save_replaces_previous_snapshot(tmp_path):
    store = ResultSnapshotStore(path=tmp_path / "snap.json")
    store.save([build_result("000001", 1.0)])
    store.save([build_result("000002", 2.0)])
    assert [r.code for r in store.load()] == ["000002"]


@pytest.mark.unit
def test_missing_snapshot_loads_empty(tmp_path):
    store = ResultSnapshotStore(path=tmp_path / "missing.json")
    assert store.load() == []
    assert store.top_positive() == []


@pytest.mark.unit
def test_top_positive_filters_and_limits(tmp_path):
    store = ResultSnapshotStore(path=tmp_path / "snap.json")
    store.save(
        [
            build_result("000001", 60.0),
            build_result("000002", 12.5),
            build_result("000003", 0.0),
            build_result("000004", -4.0),
            build_result("000005", None),
        ]
    )

    assert [r.code for r in store.top_positive()] == ["000001", "000002"]
    assert [r.code for r in store.top_positive(1)] == ["000001"]
