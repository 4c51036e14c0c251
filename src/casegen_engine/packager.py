from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from .canonical import sha256_text
from .context_store import atomic_write_text
from .models import (
    CaseManifest,
    ManifestEntry,
    NormalizedCaseBundle,
    NormalizedDocument,
    NormalizedMedia,
    RenderedFile,
    ValidationResult,
    VisibilityPartition,
)

logger = logging.getLogger(__name__)

BUNDLE_FILE = "bundle.json"
MANIFEST_FILE = "manifest.json"
VALIDATION_LOG = "logs/validation.json"


class Renderer(Protocol):
    """External renderer turning normalized JSON into files (PDFs, images)."""

    def render_document(self, case_id: str, document: NormalizedDocument) -> RenderedFile:
        ...

    def render_media(self, case_id: str, media: NormalizedMedia) -> RenderedFile:
        ...


def document_blob_path(doc_id: str) -> str:
    return f"documents/{doc_id}.json"


def media_blob_path(evidence_id: str) -> str:
    return f"media/{evidence_id}.json"


def _blob_text(item: NormalizedDocument | NormalizedMedia) -> str:
    return json.dumps(item.model_dump(mode="json"), indent=2, sort_keys=True, ensure_ascii=False)


def build_visibility(bundle: NormalizedCaseBundle) -> VisibilityPartition:
    """Split artifact ids into what a player sees up front and what waits behind a gate."""
    always = [doc.doc_id for doc in bundle.documents if not doc.gated]
    always += [item.evidence_id for item in bundle.media if not item.gated]
    gated = [doc.doc_id for doc in bundle.documents if doc.gated]
    gated += [item.evidence_id for item in bundle.media if item.gated]
    return VisibilityPartition(always_visible=always, gated_visible=gated, hidden_until_unlocked=[])


def build_manifest(
    bundle: NormalizedCaseBundle,
    rendered: list[RenderedFile] | None = None,
) -> tuple[CaseManifest, dict[str, str]]:
    """Build the manifest and the blob texts it describes.

    Returns:
        The manifest plus a mapping of relative path to the exact text hashed
        into it, so the caller writes what the manifest vouches for.
    """
    blobs: dict[str, str] = {}
    entries: list[ManifestEntry] = []
    for doc in bundle.documents:
        path = document_blob_path(doc.doc_id)
        blobs[path] = _blob_text(doc)
        entries.append(
            ManifestEntry(
                id=doc.doc_id,
                relative_path=path,
                type=doc.type,
                gated=doc.gated,
                hash=sha256_text(blobs[path]),
                size_bytes=len(blobs[path].encode("utf-8")),
            )
        )
    for item in bundle.media:
        path = media_blob_path(item.evidence_id)
        blobs[path] = _blob_text(item)
        entries.append(
            ManifestEntry(
                id=item.evidence_id,
                relative_path=path,
                type=item.kind,
                gated=item.gated,
                hash=sha256_text(blobs[path]),
                size_bytes=len(blobs[path].encode("utf-8")),
            )
        )
    gated_ids = {doc.doc_id for doc in bundle.documents if doc.gated} | {
        item.evidence_id for item in bundle.media if item.gated
    }
    for rendered_file in rendered or []:
        entries.append(
            ManifestEntry(
                id=rendered_file.id,
                relative_path=rendered_file.relative_path,
                type=rendered_file.type,
                gated=rendered_file.id in gated_ids,
                hash=rendered_file.hash,
                size_bytes=rendered_file.size_bytes,
            )
        )
    manifest = CaseManifest(
        case_id=bundle.case_id,
        entries=entries,
        file_hashes={entry.relative_path: entry.hash for entry in entries},
        visibility=build_visibility(bundle),
    )
    return manifest, blobs


class Packager:
    """Writes the final bundle, per-artifact blobs and manifest under ``{root}/{case_id}/``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def case_dir(self, case_id: str) -> Path:
        return self.root / case_id

    def package(
        self,
        bundle: NormalizedCaseBundle,
        rendered: list[RenderedFile] | None = None,
        validation_results: list[ValidationResult] | None = None,
    ) -> CaseManifest:
        manifest, blobs = build_manifest(bundle, rendered)
        case_dir = self.case_dir(bundle.case_id)
        for relative_path, text in blobs.items():
            atomic_write_text(case_dir / relative_path, text)
        if validation_results is not None:
            report = [result.model_dump(mode="json") for result in validation_results]
            atomic_write_text(case_dir / VALIDATION_LOG, json.dumps(report, indent=2))
        atomic_write_text(case_dir / BUNDLE_FILE, bundle.model_dump_json(indent=2))
        atomic_write_text(case_dir / MANIFEST_FILE, manifest.model_dump_json(indent=2))
        logger.info(
            "case=%s packaged %d document(s), %d media, %d manifest entr(ies)",
            bundle.case_id,
            len(bundle.documents),
            len(bundle.media),
            len(manifest.entries),
        )
        return manifest

    def load_manifest(self, case_id: str) -> CaseManifest:
        path = self.case_dir(case_id) / MANIFEST_FILE
        if not path.is_file():
            raise FileNotFoundError(f"Manifest not found for case {case_id}: {path}")
        return CaseManifest.model_validate_json(path.read_text(encoding="utf-8"))

    def load_bundle(self, case_id: str) -> NormalizedCaseBundle:
        path = self.case_dir(case_id) / BUNDLE_FILE
        if not path.is_file():
            raise FileNotFoundError(f"Bundle not found for case {case_id}: {path}")
        return NormalizedCaseBundle.model_validate_json(path.read_text(encoding="utf-8"))
