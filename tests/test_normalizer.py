from datetime import UTC, datetime
from typing import Any

from casegen_engine.difficulty import PROFILES
from casegen_engine.models import GatingRule, ValidationResult, ValidationStatus
from casegen_engine.normalizer import Normalizer, build_gating_graph, parse_document, structural_failures

ROOKIE = PROFILES["Rookie"]
NOW = datetime(2024, 3, 2, 12, 0, tzinfo=UTC)


def _doc(doc_id: str, *, doc_type: str = "witness_statement", gate: dict[str, Any] | None = None, **extra: Any) -> dict:
    record = {
        "doc_id": doc_id,
        "type": doc_type,
        "title": f"Document {doc_id}",
        "created_at": "2024-03-01T10:00:00+00:00",
        "sections": [{"title": "Summary", "content": f"Summary of {doc_id}."}],
    }
    if gate is not None:
        record.update(gated=True, gating_rule=gate)
    record.update(extra)
    return record


def _media(evidence_id: str, *, gate: dict[str, Any] | None = None) -> dict:
    record = {
        "evidence_id": evidence_id,
        "kind": "photo",
        "title": f"Photo {evidence_id}",
        "prompt": "grey ledger",
        "created_at": "2024-03-01T10:00:00+00:00",
    }
    if gate is not None:
        record.update(gated=True, gating_rule=gate)
    return record


def _rules(results: list[ValidationResult], rule: str) -> list[ValidationResult]:
    return [result for result in results if result.rule == rule]


def _normalize(documents: list[dict], media: list[dict] | None = None, **kwargs: Any):
    return Normalizer().normalize(
        case_id="case_1",
        documents=documents,
        media=media if media is not None else [_media(f"ev_item{n}") for n in range(1, 4)],
        profile=ROOKIE,
        now=NOW,
        **kwargs,
    )


def test_clean_bundle_passes_every_rule() -> None:
    result = _normalize([_doc(f"doc_{n:03d}") for n in range(1, 7)])
    assert result.passed, [r.description for r in result.failures]
    assert result.bundle.difficulty == "Rookie"
    assert result.bundle.version == "1.0"
    assert result.bundle.metadata.applied_rules
    assert result.bundle.document("doc_003") is not None
    assert result.bundle.document("doc_003").content == "Summary of doc_003."


def test_duplicate_document_id_fails() -> None:
    documents = [_doc(f"doc_{n:03d}") for n in range(1, 6)] + [_doc("doc_duplicate_001"), _doc("doc_duplicate_001")]
    result = _normalize(documents)
    failures = _rules(result.failures, "UNIQUE_DOCUMENT_IDS")
    assert [failure.description for failure in failures] == ["Duplicate document ID: doc_duplicate_001"]
    assert structural_failures(result.validation_results)


def test_duplicate_evidence_id_fails() -> None:
    result = _normalize([_doc(f"doc_{n:03d}") for n in range(1, 7)], [_media("ev_item1"), _media("ev_item1")])
    assert [f.description for f in _rules(result.failures, "UNIQUE_EVIDENCE_IDS")] == ["Duplicate evidence ID: ev_item1"]


def test_three_node_gating_cycle_is_reported() -> None:
    documents = [
        _doc("doc_001", gate={"action": "submit_evidence", "doc_id": "doc_003"}),
        _doc("doc_002", gate={"action": "submit_evidence", "doc_id": "doc_001"}),
        _doc("doc_003", gate={"action": "submit_evidence", "doc_id": "doc_002"}),
    ] + [_doc(f"doc_{n:03d}") for n in range(4, 7)]
    result = _normalize(documents)
    graph = result.bundle.gating_graph
    assert graph.has_cycles
    assert len(graph.cycles) == 1
    assert graph.cycles[0].startswith("Cycle detected: ")
    assert set(graph.cycles[0].removeprefix("Cycle detected: ").split(" -> ")) == {"doc_001", "doc_002", "doc_003"}
    cycle_failures = _rules(result.failures, "GATING_GRAPH_CYCLES")
    assert len(cycle_failures) == 1
    assert [f.rule for f in structural_failures(result.validation_results)] == ["GATING_GRAPH_CYCLES"]


def test_evidence_and_document_cycle_through_media_gates() -> None:
    documents = [_doc("doc_001", gate={"evidence_id": "ev_item1"})] + [_doc(f"doc_{n:03d}") for n in range(2, 7)]
    media = [_media("ev_item1", gate={"doc_id": "doc_001"}), _media("ev_item2"), _media("ev_item3")]
    result = _normalize(documents, media)
    assert result.bundle.gating_graph.has_cycles
    relationships = {(e.from_id, e.to_id): e.relationship for e in result.bundle.gating_graph.edges}
    assert relationships == {("ev_item1", "doc_001"): "unlocks", ("doc_001", "ev_item1"): "requires"}


def test_evidence_document_evidence_cycle_names_every_id() -> None:
    documents = [_doc("doc_001", gate={"evidence_id": "ev_item1"})] + [_doc(f"doc_{n:03d}") for n in range(2, 7)]
    media = [
        _media("ev_item1", gate={"evidence_id": "ev_item2"}),
        _media("ev_item2", gate={"doc_id": "doc_001"}),
        _media("ev_item3"),
    ]
    result = _normalize(documents, media)

    cycle_failures = _rules(result.failures, "GATING_GRAPH_CYCLES")
    assert len(cycle_failures) == 1
    description = cycle_failures[0].description
    assert description.startswith("Cycle detected: ")
    path = description.removeprefix("Cycle detected: ").split(" -> ")
    assert path[0] == path[-1]
    assert set(path) == {"doc_001", "ev_item1", "ev_item2"}


def test_dangling_gating_references_fail_without_edges() -> None:
    documents = [
        _doc("doc_001", gate={"evidence_id": "ev_missing9"}),
        _doc("doc_002", gate={"doc_id": "doc_404"}),
    ] + [_doc(f"doc_{n:03d}") for n in range(3, 7)]
    result = _normalize(documents)
    descriptions = [f.description for f in _rules(result.failures, "GATING_REFERENCE_INTEGRITY")]
    assert descriptions == [
        "Document doc_001 references non-existent evidence ev_missing9",
        "Document doc_002 references non-existent document doc_404",
    ]
    assert result.bundle.gating_graph.edges == []


def test_forensics_report_needs_custody_section() -> None:
    documents = [
        _doc("doc_001", doc_type="forensics_report"),
        _doc(
            "doc_002",
            doc_type="forensics_report",
            sections=[{"title": "Chain of Custody", "content": "Officer Lee to lab."}],
        ),
    ] + [_doc(f"doc_{n:03d}") for n in range(3, 7)]
    result = _normalize(documents)
    custody = _rules(result.validation_results, "FORENSICS_CUSTODY_CHAIN")
    assert [(r.status, "doc_001" in r.description) for r in custody] == [
        (ValidationStatus.FAIL, True),
        (ValidationStatus.PASS, False),
    ]


def test_difficulty_counts_are_checked() -> None:
    result = _normalize([_doc("doc_001"), _doc("doc_002")])
    counts = _rules(result.failures, "DIFFICULTY_DOCUMENT_COUNT")
    assert len(counts) == 1
    assert "expected 6-8" in counts[0].description


def test_unparseable_items_are_reported_and_dropped() -> None:
    documents = [_doc(f"doc_{n:03d}") for n in range(1, 7)] + [{"doc_id": "doc_bad", "title": "No type"}, "oops"]
    result = _normalize(documents)
    assert len(result.bundle.documents) == 6
    assert len(_rules(result.failures, "DOCUMENT_PARSING")) == 2


def test_no_documents_fails() -> None:
    result = _normalize([])
    assert [r.description for r in _rules(result.failures, "DOCUMENTS_PRESENT")] == ["Bundle contains no documents"]


def test_timestamps_are_normalized_into_case_timezone() -> None:
    documents = [_doc(f"doc_{n:03d}") for n in range(1, 7)]
    documents[0]["created_at"] = "2024-03-01T10:00:00"
    documents[1].pop("created_at")
    documents[2]["created_at"] = "yesterday"
    result = _normalize(documents, timezone="America/Sao_Paulo")
    bundle = result.bundle
    assert bundle.timezone == "America/Sao_Paulo"
    assert bundle.documents[0].created_at == "2024-03-01T10:00:00-03:00"
    assert bundle.documents[1].created_at == "2024-03-02T09:00:00-03:00"
    timestamps = _rules(result.validation_results, "ISO8601_TIMESTAMPS")
    assert {r.status for r in timestamps} == {ValidationStatus.FAIL, ValidationStatus.WARN}


def test_unknown_timezone_warns() -> None:
    result = _normalize([_doc(f"doc_{n:03d}") for n in range(1, 7)], timezone="Mars/Olympus")
    zone = _rules(result.validation_results, "TIMEZONE_CONSISTENCY")
    assert zone[0].status is ValidationStatus.WARN


def test_renormalize_keeps_metadata_and_rebuilds_graph() -> None:
    first = _normalize([_doc(f"doc_{n:03d}") for n in range(1, 7)])
    bundle = first.bundle.model_copy(deep=True)
    bundle.metadata.fix_iterations = 2
    bundle.documents[1].gated = True
    bundle.documents[1].gating_rule = GatingRule(doc_id="doc_001")
    second = Normalizer().renormalize(bundle, ROOKIE)
    assert second.bundle.metadata.fix_iterations == 2
    assert [(e.from_id, e.to_id) for e in second.bundle.gating_graph.edges] == [("doc_001", "doc_002")]


def test_build_gating_graph_ignores_rules_on_ungated_items() -> None:
    document = parse_document(_doc("doc_001", gated=False, gating_rule={"doc_id": "doc_002"}))
    assert document.gating_rule is None
    graph = build_gating_graph([document, parse_document(_doc("doc_002"))], [])
    assert graph.edges == []
    assert not graph.has_cycles
