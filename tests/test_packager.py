import hashlib
import json
from pathlib import Path

from casegen_engine.models import (
    NormalizedCaseBundle,
    NormalizedDocument,
    NormalizedMedia,
    RenderedFile,
    ValidationResult,
    ValidationStatus,
)
from casegen_engine.packager import Packager, build_manifest, build_visibility


def _bundle() -> NormalizedCaseBundle:
    return NormalizedCaseBundle(
        case_id="case_1",
        difficulty="Rookie",
        documents=[
            NormalizedDocument(doc_id="doc_001", type="police_report", title="Report", content="Body"),
            NormalizedDocument(
                doc_id="doc_002",
                type="lab_report",
                title="Lab",
                content="Sealed",
                gated=True,
                gating_rule={"evidence_id": "ev_item1"},
            ),
        ],
        media=[
            NormalizedMedia(evidence_id="ev_item1", kind="photo", title="Ledger"),
            NormalizedMedia(evidence_id="ev_item2", kind="photo", title="Knife", gated=True),
        ],
    )


def test_visibility_partition() -> None:
    visibility = build_visibility(_bundle())
    assert visibility.always_visible == ["doc_001", "ev_item1"]
    assert visibility.gated_visible == ["doc_002", "ev_item2"]
    assert visibility.hidden_until_unlocked == []


def test_manifest_entries_hash_the_written_blobs() -> None:
    rendered = [RenderedFile(id="doc_002", relative_path="rendered/doc_002.pdf", type="pdf", size_bytes=10, hash="f" * 64)]
    manifest, blobs = build_manifest(_bundle(), rendered)

    paths = [entry.relative_path for entry in manifest.entries]
    assert paths == [
        "documents/doc_001.json",
        "documents/doc_002.json",
        "media/ev_item1.json",
        "media/ev_item2.json",
        "rendered/doc_002.pdf",
    ]
    for entry in manifest.entries[:4]:
        assert entry.hash == hashlib.sha256(blobs[entry.relative_path].encode("utf-8")).hexdigest()
        assert manifest.file_hashes[entry.relative_path] == entry.hash
    assert manifest.entries[-1].gated
    assert manifest.bundle_paths == ["documents/", "media/", "logs/"]


def test_package_writes_bundle_manifest_and_blobs(tmp_path: Path) -> None:
    packager = Packager(tmp_path)
    validation = [ValidationResult(rule="UNIQUE_IDS", status=ValidationStatus.PASS, description="ok")]

    manifest = packager.package(_bundle(), validation_results=validation)

    case_dir = tmp_path / "case_1"
    for entry in manifest.entries:
        written = (case_dir / entry.relative_path).read_bytes()
        assert hashlib.sha256(written).hexdigest() == entry.hash
        assert len(written) == entry.size_bytes
    assert packager.load_manifest("case_1") == manifest
    loaded = packager.load_bundle("case_1")
    assert [doc.doc_id for doc in loaded.documents] == ["doc_001", "doc_002"]
    assert loaded.documents[1].gating_rule.evidence_id == "ev_item1"
    report = json.loads((case_dir / "logs" / "validation.json").read_text(encoding="utf-8"))
    assert report[0]["rule"] == "UNIQUE_IDS"
