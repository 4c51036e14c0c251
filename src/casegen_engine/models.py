from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class ValidationStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    WARN = "WARN"


class IssuePriority(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class MacroSeverity(str, Enum):
    CRITICAL = "Critical"
    MAJOR = "Major"
    MINOR = "Minor"


class FixAction(str, Enum):
    UPDATE_TIMESTAMP = "UpdateTimestamp"
    REPLACE_TEXT = "ReplaceText"
    MOVE_TO_ADDENDUM = "MoveToAddendum"
    REMOVE_REFERENCE = "RemoveReference"
    ADD_MEDIA_ATTACHMENT = "AddMediaAttachment"
    GENERATE_MISSING_DOCUMENT = "GenerateMissingDocument"


class GatingAction(str, Enum):
    SUBMIT_EVIDENCE = "submit_evidence"
    ROLE_REQUIRED = "role_required"
    MANUAL_UNLOCK = "manual_unlock"


class PipelineStep(str, Enum):
    PLAN = "plan"
    EXPAND = "expand"
    DESIGN = "design"
    GENERATE = "generate"
    RENDER = "render"
    NORMALIZE = "normalize"
    RULE_VALIDATE = "rule_validate"
    REDTEAM_GLOBAL = "redteam_global"
    REDTEAM_FOCUSED = "redteam_focused"
    FIX = "fix"
    PACKAGE = "package"


class PipelineState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Inbound request
# ---------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    difficulty: str | None = None
    timezone: str = "UTC"
    generate_images: bool = True
    render_files: bool = True
    constraints: list[str] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def _timezone_non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("timezone must be non-empty")
        return value


# ---------------------------------------------------------------------------
# Context store
# ---------------------------------------------------------------------------


class ContextSnapshot(BaseModel):
    """Immutable bag of resolved context paths built for one stage call."""

    model_config = ConfigDict(frozen=True)

    case_id: str
    created_at: datetime = Field(default_factory=utc_now)
    items: dict[str, Any] = Field(default_factory=dict)
    loaded_paths: list[str] = Field(default_factory=list)
    failed_paths: list[str] = Field(default_factory=list)
    total_size_bytes: int = 0
    estimated_tokens: int = 0

    def get(self, path: str, default: Any = None) -> Any:
        return self.items.get(path.lstrip("@/").rstrip("/"), default)


class ContextMetadata(BaseModel):
    case_id: str
    total_items: int
    total_size_bytes: int
    categories: dict[str, list[str]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Plan / Expand / Design outputs
# ---------------------------------------------------------------------------


class PlanCore(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = Field(min_length=1)
    synopsis: str = Field(min_length=1)
    crime_type: str
    victim: str
    location: str
    incident_datetime: str


class SuspectSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    suspect_id: str = Field(min_length=1)
    name: str
    role: str
    motive_hint: str = ""
    is_culprit: bool = False


class PlanSuspects(BaseModel):
    suspects: list[SuspectSummary]


class TimelineEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    timestamp: str
    description: str
    actors: list[str] = Field(default_factory=list)


class PlanTimeline(BaseModel):
    events: list[TimelineEvent]


class EvidenceSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    evidence_id: str = Field(min_length=1)
    name: str
    kind: str
    description: str = ""
    is_red_herring: bool = False


class PlanEvidence(BaseModel):
    evidence: list[EvidenceSummary]


class ExpandedSuspect(BaseModel):
    model_config = ConfigDict(extra="allow")

    suspect_id: str = Field(min_length=1)
    name: str
    background: str
    alibi: str
    motive: str
    relationships: list[str] = Field(default_factory=list)


class ExpandedEvidence(BaseModel):
    model_config = ConfigDict(extra="allow")

    evidence_id: str = Field(min_length=1)
    name: str
    description: str
    chain_of_custody: list[str] = Field(default_factory=list)
    related_suspects: list[str] = Field(default_factory=list)


class ExpandedTimeline(BaseModel):
    events: list[TimelineEvent]


class Relation(BaseModel):
    source: str
    target: str
    kind: str
    description: str = ""


class RelationSynthesis(BaseModel):
    relations: list[Relation]


class GatingRule(BaseModel):
    action: GatingAction = GatingAction.SUBMIT_EVIDENCE
    evidence_id: str | None = None
    doc_id: str | None = None
    notes: str | None = None

    def required_ids(self) -> list[str]:
        return [value for value in (self.evidence_id, self.doc_id) if value]


class DocumentSpec(BaseModel):
    doc_id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    title: str = Field(min_length=1)
    sections: list[str] = Field(default_factory=list)
    length_target: tuple[int, int] = (100, 500)
    gated: bool = False
    gating_rule: GatingRule | None = None


class MediaSpec(BaseModel):
    evidence_id: str = Field(min_length=1)
    kind: str = Field(min_length=1)
    title: str = Field(min_length=1)
    prompt: str = ""
    constraints: dict[str, Any] = Field(default_factory=dict)
    deferred: bool = False
    gated: bool = False
    gating_rule: GatingRule | None = None


class DocumentDesign(BaseModel):
    documents: list[DocumentSpec]


class MediaDesign(BaseModel):
    media: list[MediaSpec]
    visual_registry: dict[str, str] = Field(
        default_factory=dict,
        description="evidence_id -> canonical visual description shared by every media item",
    )


# ---------------------------------------------------------------------------
# Generated artifacts
# ---------------------------------------------------------------------------


class DocumentSection(BaseModel):
    title: str
    content: str = ""


class GeneratedDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    doc_id: str = Field(min_length=1)
    type: str
    title: str
    sections: list[DocumentSection] = Field(default_factory=list)
    created_at: str | None = None
    media_refs: list[str] = Field(default_factory=list)


class GeneratedMedia(BaseModel):
    model_config = ConfigDict(extra="allow")

    evidence_id: str = Field(min_length=1)
    kind: str
    title: str
    prompt: str
    caption: str = ""
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Normalized bundle
# ---------------------------------------------------------------------------


class NormalizedDocument(BaseModel):
    doc_id: str
    type: str
    title: str
    sections: list[DocumentSection] = Field(default_factory=list)
    content: str = ""
    length_target: tuple[int, int] = (100, 500)
    gated: bool = False
    gating_rule: GatingRule | None = None
    created_at: str | None = None
    media_refs: list[str] = Field(default_factory=list)
    addendum: list[str] = Field(default_factory=list)
    placeholder: bool = False


class NormalizedMedia(BaseModel):
    evidence_id: str
    kind: str
    title: str
    prompt: str = ""
    caption: str = ""
    constraints: dict[str, Any] = Field(default_factory=dict)
    deferred: bool = False
    gated: bool = False
    gating_rule: GatingRule | None = None
    created_at: str | None = None


class GatingNode(BaseModel):
    id: str
    type: Literal["document", "evidence"]
    gated: bool = False
    unlock_action: str | None = None
    required_ids: list[str] = Field(default_factory=list)


class GatingEdge(BaseModel):
    from_id: str
    to_id: str
    relationship: Literal["unlocks", "requires"]


class GatingGraph(BaseModel):
    nodes: list[GatingNode] = Field(default_factory=list)
    edges: list[GatingEdge] = Field(default_factory=list)
    has_cycles: bool = False
    cycles: list[str] = Field(default_factory=list)

    def neighbours(self, node_id: str) -> set[str]:
        """Ids directly linked to *node_id* in either direction."""
        linked: set[str] = set()
        for edge in self.edges:
            if edge.from_id == node_id:
                linked.add(edge.to_id)
            elif edge.to_id == node_id:
                linked.add(edge.from_id)
        return linked


class ValidationResult(BaseModel):
    rule: str
    status: ValidationStatus
    description: str
    details: str | None = None


class BundleMetadata(BaseModel):
    created_at: datetime = Field(default_factory=utc_now)
    pipeline: str = "casegen-engine/plan-expand-design-generate-normalize"
    applied_rules: list[str] = Field(default_factory=list)
    fix_iterations: int = 0
    residual_issues: list[PreciseIssue] = Field(default_factory=list)


class NormalizedCaseBundle(BaseModel):
    case_id: str
    version: str = "1.0"
    timezone: str = "UTC"
    difficulty: str
    documents: list[NormalizedDocument] = Field(default_factory=list)
    media: list[NormalizedMedia] = Field(default_factory=list)
    gating_graph: GatingGraph = Field(default_factory=GatingGraph)
    metadata: BundleMetadata = Field(default_factory=BundleMetadata)

    def document(self, doc_id: str) -> NormalizedDocument | None:
        return next((doc for doc in self.documents if doc.doc_id == doc_id), None)

    def media_item(self, evidence_id: str) -> NormalizedMedia | None:
        return next((item for item in self.media if item.evidence_id == evidence_id), None)


class NormalizationLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    level: Literal["INFO", "WARNING", "ERROR"] = "INFO"
    step: str
    message: str


class NormalizationResult(BaseModel):
    bundle: NormalizedCaseBundle
    validation_results: list[ValidationResult] = Field(default_factory=list)
    log_entries: list[NormalizationLogEntry] = Field(default_factory=list)

    @property
    def failures(self) -> list[ValidationResult]:
        return [result for result in self.validation_results if result.status is ValidationStatus.FAIL]

    @property
    def passed(self) -> bool:
        return not self.failures


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class ManifestEntry(BaseModel):
    id: str
    relative_path: str
    type: str
    gated: bool = False
    hash: str
    size_bytes: int


class VisibilityPartition(BaseModel):
    always_visible: list[str] = Field(default_factory=list)
    gated_visible: list[str] = Field(default_factory=list)
    hidden_until_unlocked: list[str] = Field(default_factory=list)


class CaseManifest(BaseModel):
    case_id: str
    created_at: datetime = Field(default_factory=utc_now)
    entries: list[ManifestEntry] = Field(default_factory=list)
    file_hashes: dict[str, str] = Field(default_factory=dict)
    bundle_paths: list[str] = Field(default_factory=lambda: ["documents/", "media/", "logs/"])
    visibility: VisibilityPartition = Field(default_factory=VisibilityPartition)


class RenderedFile(BaseModel):
    """File produced by an external renderer for one document or media item."""

    id: str
    relative_path: str
    type: str
    size_bytes: int
    hash: str


# ---------------------------------------------------------------------------
# RedTeam analysis
# ---------------------------------------------------------------------------


class MacroIssue(BaseModel):
    type: str
    severity: MacroSeverity = MacroSeverity.MINOR
    affected_documents: list[str] = Field(default_factory=list)
    description: str = ""
    required_focus_areas: list[str] = Field(default_factory=list)


class GlobalRedTeamAnalysis(BaseModel):
    macro_issues: list[MacroIssue] = Field(default_factory=list)
    critical_documents: list[str] = Field(default_factory=list)
    focus_areas: list[str] = Field(default_factory=list)
    overall_assessment: str = ""
    requires_detailed_analysis: bool = False
    fallback: bool = False

    def flagged_documents(self) -> list[str]:
        ordered: list[str] = []
        for doc_id in [*self.critical_documents, *(d for issue in self.macro_issues for d in issue.affected_documents)]:
            if doc_id and doc_id not in ordered:
                ordered.append(doc_id)
        return ordered


class IssueLocation(BaseModel):
    doc_id: str = ""
    field: str | None = None
    section: str | None = None
    line_pattern: str | None = None
    current_value: str | None = None


class IssueFix(BaseModel):
    action: FixAction
    new_value: str | None = None
    old_text: str | None = None
    new_text: str | None = None
    new_section: str | None = None
    reason: str | None = None


class PreciseIssue(BaseModel):
    priority: IssuePriority = IssuePriority.MEDIUM
    type: str = ""
    location: IssueLocation
    problem: str = ""
    fix: IssueFix


class StructuredRedTeamAnalysis(BaseModel):
    issues: list[PreciseIssue] = Field(default_factory=list)
    summary: str = ""
    fallback: bool = False

    def count(self, priority: IssuePriority) -> int:
        return sum(1 for issue in self.issues if issue.priority is priority)

    @property
    def high_priority_count(self) -> int:
        return self.count(IssuePriority.HIGH)

    @property
    def medium_priority_count(self) -> int:
        return self.count(IssuePriority.MEDIUM)

    @property
    def low_priority_count(self) -> int:
        return self.count(IssuePriority.LOW)

    @property
    def blocking_issues(self) -> list[PreciseIssue]:
        return [issue for issue in self.issues if issue.priority is not IssuePriority.LOW]


class FixOutcome(BaseModel):
    issue: PreciseIssue
    applied: bool
    reason: str = ""


# ---------------------------------------------------------------------------
# Pipeline status
# ---------------------------------------------------------------------------


class PipelineStatus(BaseModel):
    case_id: str
    difficulty: str | None = None
    state: PipelineState = PipelineState.RUNNING
    current_step: PipelineStep | None = None
    completed_steps: list[PipelineStep] = Field(default_factory=list)
    fix_iterations: int = 0
    error: str | None = None
    error_stage: str | None = None
    updated_at: datetime = Field(default_factory=utc_now)


BundleMetadata.model_rebuild()
NormalizedCaseBundle.model_rebuild()
NormalizationResult.model_rebuild()
