from __future__ import annotations

import logging
import re
from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from .difficulty import DifficultyProfile, within
from .models import (
    BundleMetadata,
    DocumentSection,
    GatingEdge,
    GatingGraph,
    GatingNode,
    GatingRule,
    NormalizationLogEntry,
    NormalizationResult,
    NormalizedCaseBundle,
    NormalizedDocument,
    NormalizedMedia,
    ValidationResult,
    ValidationStatus,
)

logger = logging.getLogger(__name__)

PIPELINE_ID = "casegen-engine/plan-expand-design-generate-normalize"
APPLIED_RULES = [
    "UNIQUE_IDS",
    "GATING_REFERENCE_INTEGRITY",
    "DIFFICULTY_VALIDATION",
    "GATING_GRAPH_CYCLES",
    "FORENSICS_CUSTODY_CHAIN",
    "ISO8601_TIMESTAMPS",
]
# Rules whose FAIL means the bundle is structurally unusable.
STRUCTURAL_RULES = frozenset(
    {
        "DOCUMENTS_PRESENT",
        "UNIQUE_DOCUMENT_IDS",
        "UNIQUE_EVIDENCE_IDS",
        "GATING_REFERENCE_INTEGRITY",
        "GATING_GRAPH_CYCLES",
    }
)

FORENSICS_REPORT_TYPE = "forensics_report"
_CUSTODY_SECTION_RE = re.compile(r"cadeia de cust[óo]dia|chain of custody", re.IGNORECASE)


def _result(rule: str, status: ValidationStatus, description: str, details: str | None = None) -> ValidationResult:
    return ValidationResult(rule=rule, status=status, description=description, details=details)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _as_mapping(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, BaseModel):
        return raw.model_dump(mode="json")
    if isinstance(raw, Mapping):
        return raw
    raise TypeError(f"expected an object, got {type(raw).__name__}")


def _require_fields(raw: Mapping[str, Any], *names: str) -> None:
    for name in names:
        value = raw.get(name)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"missing required field '{name}'")


def _parse_sections(raw_sections: Any) -> list[DocumentSection]:
    sections: list[DocumentSection] = []
    for raw in raw_sections or []:
        if isinstance(raw, str):
            sections.append(DocumentSection(title="", content=raw))
        else:
            sections.append(DocumentSection.model_validate(raw))
    return sections


def _parse_gating(raw: Mapping[str, Any]) -> tuple[bool, GatingRule | None]:
    gated = bool(raw.get("gated", False))
    rule = raw.get("gating_rule")
    if not gated or not rule:
        return gated, None
    return gated, GatingRule.model_validate(rule)


def parse_document(raw: Any) -> NormalizedDocument:
    """Turn one loosely typed generated document into a NormalizedDocument.

    Raises:
        ValueError: If a required field is missing or a nested value is invalid.
        TypeError: If the item is not an object.
    """
    data = _as_mapping(raw)
    _require_fields(data, "doc_id", "type", "title")
    sections = _parse_sections(data.get("sections"))
    gated, rule = _parse_gating(data)
    if sections:
        content = "\n\n".join(section.content for section in sections if section.content)
    else:
        content = str(data.get("content") or "")
    return NormalizedDocument(
        doc_id=data["doc_id"].strip(),
        type=data["type"].strip(),
        title=data["title"].strip(),
        sections=sections,
        content=content,
        length_target=tuple(data.get("length_target") or (100, 500)),
        gated=gated,
        gating_rule=rule,
        created_at=data.get("created_at"),
        media_refs=list(data.get("media_refs") or []),
        addendum=list(data.get("addendum") or []),
        placeholder=bool(data.get("placeholder", False)),
    )


def parse_media(raw: Any) -> NormalizedMedia:
    data = _as_mapping(raw)
    _require_fields(data, "evidence_id", "kind", "title")
    gated, rule = _parse_gating(data)
    return NormalizedMedia(
        evidence_id=data["evidence_id"].strip(),
        kind=data["kind"].strip(),
        title=data["title"].strip(),
        prompt=str(data.get("prompt") or ""),
        caption=str(data.get("caption") or ""),
        constraints=dict(data.get("constraints") or {}),
        deferred=bool(data.get("deferred", False)),
        gated=gated,
        gating_rule=rule,
        created_at=data.get("created_at"),
    )


# ---------------------------------------------------------------------------
# Gating graph
# ---------------------------------------------------------------------------


def build_gating_graph(documents: list[NormalizedDocument], media: list[NormalizedMedia]) -> GatingGraph:
    """Derive unlock dependencies from the gating rules of every document and media item.

    Edges run from the prerequisite to the gated item: ``unlocks`` when the
    prerequisite is evidence, ``requires`` when it is a document. Rules naming
    an unknown id produce no edge; reference integrity reports them instead.
    """
    doc_ids = {doc.doc_id for doc in documents}
    evidence_ids = {item.evidence_id for item in media}
    nodes: list[GatingNode] = []
    edges: list[GatingEdge] = []

    def add_edges(target: str, rule: GatingRule | None) -> None:
        if rule is None:
            return
        if rule.evidence_id and rule.evidence_id in evidence_ids:
            edges.append(GatingEdge(from_id=rule.evidence_id, to_id=target, relationship="unlocks"))
        if rule.doc_id and rule.doc_id in doc_ids:
            edges.append(GatingEdge(from_id=rule.doc_id, to_id=target, relationship="requires"))

    for doc in documents:
        rule = doc.gating_rule if doc.gated else None
        nodes.append(
            GatingNode(
                id=doc.doc_id,
                type="document",
                gated=doc.gated,
                unlock_action=rule.action.value if rule else None,
                required_ids=rule.required_ids() if rule else [],
            )
        )
        add_edges(doc.doc_id, rule)
    for item in media:
        rule = item.gating_rule if item.gated else None
        nodes.append(
            GatingNode(
                id=item.evidence_id,
                type="evidence",
                gated=item.gated,
                unlock_action=rule.action.value if rule else None,
                required_ids=rule.required_ids() if rule else [],
            )
        )
        add_edges(item.evidence_id, rule)

    cycles = detect_cycles(nodes, edges)
    return GatingGraph(nodes=nodes, edges=edges, has_cycles=bool(cycles), cycles=cycles)


def detect_cycles(nodes: list[GatingNode], edges: list[GatingEdge]) -> list[str]:
    """Depth-first search that reports each back edge as ``Cycle detected: a -> b -> a``."""
    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.from_id].append(edge.to_id)

    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()
    cycles: list[str] = []
    seen_cycles: set[frozenset[str]] = set()

    def visit(node_id: str) -> None:
        visited.add(node_id)
        stack.append(node_id)
        on_stack.add(node_id)
        for nxt in adjacency.get(node_id, []):
            if nxt in on_stack:
                path = stack[stack.index(nxt) :] + [nxt]
                key = frozenset(path)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    cycles.append("Cycle detected: " + " -> ".join(path))
            elif nxt not in visited:
                visit(nxt)
        stack.pop()
        on_stack.discard(node_id)

    for node in nodes:
        if node.id not in visited:
            visit(node.id)
    return cycles


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class Normalizer:
    """Deterministic pass from generated artifacts to a validated NormalizedCaseBundle.

    No generation calls happen here. Every structural defect is reported as a
    ValidationResult; nothing in ``normalize`` raises for bad content.
    """

    def __init__(self, *, pipeline_id: str = PIPELINE_ID) -> None:
        self.pipeline_id = pipeline_id

    def normalize(
        self,
        *,
        case_id: str,
        documents: Iterable[Any],
        media: Iterable[Any],
        profile: DifficultyProfile,
        timezone: str = "UTC",
        metadata: BundleMetadata | None = None,
        now: datetime | None = None,
    ) -> NormalizationResult:
        results: list[ValidationResult] = []
        log: list[NormalizationLogEntry] = []

        parsed_docs: list[NormalizedDocument] = []
        for index, raw in enumerate(documents):
            try:
                parsed_docs.append(parse_document(raw))
            except (ValueError, TypeError) as exc:
                results.append(
                    _result("DOCUMENT_PARSING", ValidationStatus.FAIL, f"Failed to parse document #{index}", str(exc))
                )
        parsed_media: list[NormalizedMedia] = []
        for index, raw in enumerate(media):
            try:
                parsed_media.append(parse_media(raw))
            except (ValueError, TypeError) as exc:
                results.append(
                    _result("MEDIA_PARSING", ValidationStatus.FAIL, f"Failed to parse media item #{index}", str(exc))
                )
        log.append(
            NormalizationLogEntry(
                step="parse",
                message=f"Parsed {len(parsed_docs)} document(s) and {len(parsed_media)} media item(s)",
            )
        )
        if not parsed_docs:
            results.append(_result("DOCUMENTS_PRESENT", ValidationStatus.FAIL, "Bundle contains no documents"))

        results.extend(self._check_ids(parsed_docs, parsed_media))
        results.extend(self._check_difficulty(parsed_docs, parsed_media, profile))
        results.extend(self._check_custody_chain(parsed_docs))

        graph = build_gating_graph(parsed_docs, parsed_media)
        if graph.has_cycles:
            results.extend(_result("GATING_GRAPH_CYCLES", ValidationStatus.FAIL, cycle) for cycle in graph.cycles)
        else:
            results.append(_result("GATING_GRAPH_CYCLES", ValidationStatus.PASS, "Gating graph is acyclic"))
        log.append(
            NormalizationLogEntry(
                level="WARNING" if graph.has_cycles else "INFO",
                step="gating_graph",
                message=f"Built gating graph with {len(graph.nodes)} node(s), {len(graph.edges)} edge(s)",
            )
        )

        zone, zone_result = self._resolve_timezone(timezone)
        results.append(zone_result)
        results.extend(self._normalize_timestamps(parsed_docs, parsed_media, zone, now or datetime.now(UTC)))

        bundle_metadata = (metadata or BundleMetadata()).model_copy(
            update={"pipeline": self.pipeline_id, "applied_rules": list(APPLIED_RULES)}
        )
        bundle = NormalizedCaseBundle(
            case_id=case_id,
            timezone=timezone,
            difficulty=profile.name,
            documents=parsed_docs,
            media=parsed_media,
            gating_graph=graph,
            metadata=bundle_metadata,
        )
        failures = sum(1 for result in results if result.status is ValidationStatus.FAIL)
        log.append(
            NormalizationLogEntry(
                level="WARNING" if failures else "INFO",
                step="validate",
                message=f"{len(results)} rule result(s), {failures} failure(s)",
            )
        )
        logger.info(
            "case=%s normalized %d document(s), %d media, %d failure(s), cycles=%s",
            case_id,
            len(parsed_docs),
            len(parsed_media),
            failures,
            graph.has_cycles,
        )
        return NormalizationResult(bundle=bundle, validation_results=results, log_entries=log)

    def renormalize(self, bundle: NormalizedCaseBundle, profile: DifficultyProfile) -> NormalizationResult:
        """Re-run every rule over an edited bundle, keeping its metadata."""
        return self.normalize(
            case_id=bundle.case_id,
            documents=[doc.model_dump(mode="json") for doc in bundle.documents],
            media=[item.model_dump(mode="json") for item in bundle.media],
            profile=profile,
            timezone=bundle.timezone,
            metadata=bundle.metadata,
        )

    # -- rules -----------------------------------------------------------

    @staticmethod
    def _check_ids(documents: list[NormalizedDocument], media: list[NormalizedMedia]) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        doc_counts = Counter(doc.doc_id for doc in documents)
        evidence_counts = Counter(item.evidence_id for item in media)
        for doc_id, count in doc_counts.items():
            if count > 1:
                results.append(
                    _result("UNIQUE_DOCUMENT_IDS", ValidationStatus.FAIL, f"Duplicate document ID: {doc_id}", f"{count}")
                )
        for evidence_id, count in evidence_counts.items():
            if count > 1:
                results.append(
                    _result(
                        "UNIQUE_EVIDENCE_IDS", ValidationStatus.FAIL, f"Duplicate evidence ID: {evidence_id}", f"{count}"
                    )
                )

        dangling: list[ValidationResult] = []
        for doc in documents:
            if not doc.gated or doc.gating_rule is None:
                continue
            rule = doc.gating_rule
            if rule.evidence_id and rule.evidence_id not in evidence_counts:
                dangling.append(
                    _result(
                        "GATING_REFERENCE_INTEGRITY",
                        ValidationStatus.FAIL,
                        f"Document {doc.doc_id} references non-existent evidence {rule.evidence_id}",
                    )
                )
            if rule.doc_id and rule.doc_id not in doc_counts:
                dangling.append(
                    _result(
                        "GATING_REFERENCE_INTEGRITY",
                        ValidationStatus.FAIL,
                        f"Document {doc.doc_id} references non-existent document {rule.doc_id}",
                    )
                )
        for item in media:
            if not item.gated or item.gating_rule is None:
                continue
            rule = item.gating_rule
            if rule.evidence_id and rule.evidence_id not in evidence_counts:
                dangling.append(
                    _result(
                        "GATING_REFERENCE_INTEGRITY",
                        ValidationStatus.FAIL,
                        f"Media {item.evidence_id} references non-existent evidence {rule.evidence_id}",
                    )
                )
            if rule.doc_id and rule.doc_id not in doc_counts:
                dangling.append(
                    _result(
                        "GATING_REFERENCE_INTEGRITY",
                        ValidationStatus.FAIL,
                        f"Media {item.evidence_id} references non-existent document {rule.doc_id}",
                    )
                )
        if not results:
            results.append(_result("UNIQUE_IDS", ValidationStatus.PASS, "All document and evidence ids are unique"))
        results.extend(dangling)
        if not dangling:
            results.append(
                _result("GATING_REFERENCE_INTEGRITY", ValidationStatus.PASS, "All gating references resolve")
            )
        return results

    @staticmethod
    def _check_difficulty(
        documents: list[NormalizedDocument], media: list[NormalizedMedia], profile: DifficultyProfile
    ) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        doc_range = f"{profile.documents[0]}-{profile.documents[1]}"
        results.append(
            _result(
                "DIFFICULTY_DOCUMENT_COUNT",
                ValidationStatus.PASS if within(len(documents), profile.documents) else ValidationStatus.FAIL,
                f"{len(documents)} document(s) for {profile.name} (expected {doc_range})",
            )
        )
        evidence_range = f"{profile.evidence[0]}-{profile.evidence[1]}"
        results.append(
            _result(
                "DIFFICULTY_EVIDENCE_COUNT",
                ValidationStatus.PASS if within(len(media), profile.evidence) else ValidationStatus.FAIL,
                f"{len(media)} evidence item(s) for {profile.name} (expected {evidence_range})",
            )
        )
        gated = sum(1 for doc in documents if doc.gated)
        results.append(
            _result(
                "DIFFICULTY_GATED_COUNT",
                ValidationStatus.PASS if gated == profile.gated_documents else ValidationStatus.WARN,
                f"{gated} gated document(s) for {profile.name} (expected {profile.gated_documents})",
            )
        )
        return results

    @staticmethod
    def _check_custody_chain(documents: list[NormalizedDocument]) -> list[ValidationResult]:
        reports = [doc for doc in documents if doc.type == FORENSICS_REPORT_TYPE]
        if not reports:
            return [_result("FORENSICS_CUSTODY_CHAIN", ValidationStatus.PASS, "No forensics reports to check")]
        results: list[ValidationResult] = []
        for doc in reports:
            has_section = any(_CUSTODY_SECTION_RE.search(section.title) for section in doc.sections)
            if has_section:
                results.append(
                    _result(
                        "FORENSICS_CUSTODY_CHAIN",
                        ValidationStatus.PASS,
                        f"Forensics report {doc.doc_id} includes a chain of custody section",
                    )
                )
            else:
                results.append(
                    _result(
                        "FORENSICS_CUSTODY_CHAIN",
                        ValidationStatus.FAIL,
                        f"Forensics report {doc.doc_id} is missing a chain of custody section",
                    )
                )
        return results

    @staticmethod
    def _resolve_timezone(timezone: str) -> tuple[tzinfo, ValidationResult]:
        if timezone == "UTC":
            return UTC, _result("TIMEZONE_CONSISTENCY", ValidationStatus.PASS, f"Timezone validation: {timezone}")
        try:
            zone = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return UTC, _result(
                "TIMEZONE_CONSISTENCY",
                ValidationStatus.WARN,
                f"Timezone validation: {timezone}",
                "Unknown timezone; timestamps are normalized to UTC",
            )
        return zone, _result("TIMEZONE_CONSISTENCY", ValidationStatus.PASS, f"Timezone validation: {timezone}")

    @staticmethod
    def _normalize_timestamps(
        documents: list[NormalizedDocument],
        media: list[NormalizedMedia],
        zone: tzinfo,
        now: datetime,
    ) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        warnings: list[str] = []
        items: list[tuple[str, NormalizedDocument | NormalizedMedia]] = [
            *((f"Document {doc.doc_id}", doc) for doc in documents),
            *((f"Media {item.evidence_id}", item) for item in media),
        ]
        for label, item in items:
            if not item.created_at:
                warnings.append(f"{label}: missing created_at timestamp")
                item.created_at = now.astimezone(zone).isoformat()
                continue
            try:
                parsed = datetime.fromisoformat(item.created_at)
            except ValueError:
                results.append(
                    _result(
                        "ISO8601_TIMESTAMPS",
                        ValidationStatus.FAIL,
                        f"{label} has an invalid ISO-8601 timestamp",
                        item.created_at,
                    )
                )
                continue
            if parsed.tzinfo is None:
                warnings.append(f"{label}: timestamp missing timezone offset")
                parsed = parsed.replace(tzinfo=zone)
            item.created_at = parsed.isoformat()
        if warnings:
            results.append(
                _result(
                    "ISO8601_TIMESTAMPS",
                    ValidationStatus.WARN,
                    f"Found {len(warnings)} timestamp inconsistencies",
                    "; ".join(warnings),
                )
            )
        if not results:
            results.append(
                _result("ISO8601_TIMESTAMPS", ValidationStatus.PASS, f"All {len(items)} timestamps are valid ISO-8601")
            )
        return results


def structural_failures(results: Iterable[ValidationResult]) -> list[ValidationResult]:
    return [r for r in results if r.status is ValidationStatus.FAIL and r.rule in STRUCTURAL_RULES]
