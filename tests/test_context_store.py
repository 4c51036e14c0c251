from pathlib import Path

import pytest

from casegen_engine.context_store import ContextNotFoundError, ContextStore, normalize_path
from casegen_engine.models import PlanCore


def _core(title: str) -> PlanCore:
    return PlanCore(
        title=title,
        synopsis="A bookkeeper is found dead.",
        crime_type="homicide",
        victim="Ana Ruiz",
        location="Harbor office",
        incident_datetime="2024-03-01T21:00:00",
    )


def test_normalize_path_strips_reference_markers() -> None:
    assert normalize_path("@plan/core/") == "plan/core"
    assert normalize_path("/expand/suspects/sus_001") == "expand/suspects/sus_001"
    for bad in ("", "@/", "plan/../secrets", "plan//core"):
        with pytest.raises(ValueError):
            normalize_path(bad)


def test_save_and_load_round_trip_with_model(tmp_path: Path) -> None:
    store = ContextStore(tmp_path)
    key = store.save("case_1", "@plan/core", _core("First"))
    assert key == "plan/core"
    assert store.item_path("case_1", key) == tmp_path / "case_1" / "context" / "plan" / "core.json"
    assert store.load("case_1", "plan/core", PlanCore).title == "First"
    assert store.load("case_1", "plan/core")["victim"] == "Ana Ruiz"
    assert store.exists("case_1", "@plan/core/")


def test_load_missing_path_raises(tmp_path: Path) -> None:
    store = ContextStore(tmp_path)
    with pytest.raises(ContextNotFoundError) as excinfo:
        store.load("case_1", "plan/core")
    assert excinfo.value.path == "plan/core"
    assert excinfo.value.case_id == "case_1"


def test_saving_twice_keeps_one_entry_with_latest_value(tmp_path: Path) -> None:
    store = ContextStore(tmp_path)
    store.save("case_1", "plan/core", _core("First"))
    store.save("case_1", "plan/core", _core("Second"))
    snapshot = store.build_snapshot("case_1", ["plan/core", "@plan/core"])
    assert list(snapshot.items) == ["plan/core"]
    assert snapshot.get("@plan/core")["title"] == "Second"
    assert snapshot.loaded_paths == ["plan/core"]
    assert snapshot.estimated_tokens == snapshot.total_size_bytes // 4


def test_snapshot_records_failed_paths_instead_of_raising(tmp_path: Path) -> None:
    store = ContextStore(tmp_path)
    store.save("case_1", "plan/core", _core("First"))
    snapshot = store.build_snapshot("case_1", ["plan/core", "plan/suspects", "../escape"])
    assert snapshot.loaded_paths == ["plan/core"]
    assert snapshot.failed_paths == ["plan/suspects", "../escape"]


def test_reads_survive_cache_expiry_and_other_instances(tmp_path: Path) -> None:
    writer = ContextStore(tmp_path, cache_ttl_minutes=0)
    writer.save("case_1", "plan/core", _core("Persisted"))
    reader = ContextStore(tmp_path)
    assert reader.load("case_1", "plan/core", PlanCore).title == "Persisted"
    assert writer.clear_cache() == 0


def test_query_delete_and_metadata(tmp_path: Path) -> None:
    store = ContextStore(tmp_path)
    store.save("case_1", "plan/core", _core("First"))
    for suspect_id in ("sus_001", "sus_002"):
        store.save("case_1", f"expand/suspects/{suspect_id}", {"suspect_id": suspect_id})
    store.save("case_1", "expand/evidence/ev_item1", {"evidence_id": "ev_item1"})

    suspects = store.query("case_1", "expand/suspects/*")
    assert sorted(suspects) == ["expand/suspects/sus_001", "expand/suspects/sus_002"]
    assert set(store.query("case_1", "expand")) == {
        "expand/suspects/sus_001",
        "expand/suspects/sus_002",
        "expand/evidence/ev_item1",
    }

    metadata = store.get_metadata("case_1")
    assert metadata.total_items == 4
    assert sorted(metadata.categories) == ["expand", "plan"]
    assert metadata.total_size_bytes > 0

    assert store.delete("case_1", "expand/suspects/*") == 2
    assert not store.exists("case_1", "expand/suspects/sus_001")
    with pytest.raises(ContextNotFoundError):
        store.load("case_1", "expand/suspects/sus_002")
    assert store.list_paths("case_1") == ["expand/evidence/ev_item1", "plan/core"]


def test_cases_are_isolated(tmp_path: Path) -> None:
    store = ContextStore(tmp_path)
    store.save("case_1", "plan/core", _core("One"))
    assert not store.exists("case_2", "plan/core")
    assert store.list_paths("case_2") == []
    with pytest.raises(ValueError):
        store.case_root("../case_1")
