from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel

from .context_store import ContextStore
from .difficulty import DifficultyProfile, within
from .execution import StageError, StageResult, run_with_retries
from .llm import MalformedOutputError, TextGenerationGateway
from .models import (
    DocumentDesign,
    DocumentSpec,
    ExpandedEvidence,
    ExpandedSuspect,
    ExpandedTimeline,
    GeneratedDocument,
    GeneratedMedia,
    GenerationRequest,
    MediaDesign,
    MediaSpec,
    PlanCore,
    PlanEvidence,
    PlanSuspects,
    PlanTimeline,
    RelationSynthesis,
)
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# ---------------------------------------------------------------------------
# Context paths
# ---------------------------------------------------------------------------

REQUEST_PATH = "request"
PLAN_CORE = "plan/core"
PLAN_SUSPECTS = "plan/suspects"
PLAN_TIMELINE = "plan/timeline"
PLAN_EVIDENCE = "plan/evidence"
EXPAND_SUSPECTS = "expand/suspects"
EXPAND_EVIDENCE = "expand/evidence"
EXPAND_TIMELINE = "expand/timeline"
EXPAND_RELATIONS = "expand/relations"
DESIGN_DOCUMENTS = "design/documents"
DESIGN_MEDIA = "design/media"
VISUAL_REGISTRY = "visual-registry"
GENERATED_DOCUMENTS = "generate/documents"
GENERATED_MEDIA = "generate/media"

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_BASE_SYSTEM = (
    "You write content for an investigative case file used in a detective game. "
    "Every fact must stay consistent with the supplied context. "
    "Use stable snake_case identifiers and ISO-8601 timestamps with offsets. "
    "Return only JSON matching the requested schema."
)

PLAN_CORE_SYSTEM = _BASE_SYSTEM + " Task: define the core premise of a new case (crime, victim, place, time)."
PLAN_SUSPECTS_SYSTEM = (
    _BASE_SYSTEM + " Task: list the suspects. Exactly one suspect is the culprit. "
    "Suspect ids look like sus_<name>_001."
)
PLAN_TIMELINE_SYSTEM = _BASE_SYSTEM + " Task: outline the ground-truth timeline of the incident."
PLAN_EVIDENCE_SYSTEM = (
    _BASE_SYSTEM + " Task: list the physical and digital evidence. Evidence ids look like ev_<name>_001. "
    "Mark red herrings explicitly."
)
EXPAND_SUSPECT_SYSTEM = _BASE_SYSTEM + " Task: expand one suspect into a full profile with alibi and motive."
EXPAND_EVIDENCE_SYSTEM = (
    _BASE_SYSTEM + " Task: expand one evidence item, including its chain of custody entries."
)
EXPAND_TIMELINE_SYSTEM = _BASE_SYSTEM + " Task: refine the timeline to minute precision using the evidence list."
RELATIONS_SYSTEM = _BASE_SYSTEM + " Task: synthesize relations between suspects and evidence."
DESIGN_DOCUMENTS_SYSTEM = (
    _BASE_SYSTEM + " Task: design the document specs of the case file (police reports, interviews, "
    "forensics_report, memos). Gated documents need a gating_rule naming the evidence or document "
    "that unlocks them. Every forensics_report includes a 'Chain of custody' section."
)
DESIGN_MEDIA_SYSTEM = (
    _BASE_SYSTEM + " Task: design one media spec per evidence item and a visual registry "
    "describing each item so every image of it looks the same."
)
GENERATE_DOCUMENT_SYSTEM = (
    _BASE_SYSTEM + " Task: write the full document for the given spec, one entry per required section, "
    "keeping the doc_id and type unchanged."
)
GENERATE_MEDIA_SYSTEM = (
    _BASE_SYSTEM + " Task: write the media descriptor (image prompt and caption) for the given spec, "
    "keeping the evidence_id unchanged and following the visual registry."
)


def _context_block(snapshot_items: dict[str, Any]) -> str:
    return json.dumps(snapshot_items, indent=2, sort_keys=True, ensure_ascii=False)


def _require_unique(ids: list[str], label: str) -> None:
    seen: set[str] = set()
    for value in ids:
        if value in seen:
            raise MalformedOutputError(f"duplicate {label} id: {value}")
        seen.add(value)


def _require_count(count: int, bounds: tuple[int, int], label: str) -> None:
    if not within(count, bounds):
        raise MalformedOutputError(f"{label} count {count} outside range {bounds[0]}-{bounds[1]}")


class StageProducers:
    """Plan/Expand/Design/Generate producers sharing one gateway and context store.

    Every producer reads a narrow snapshot, calls the gateway with a schema,
    validates the reply and saves it under a stable path. A producer whose
    output path already exists returns the stored value instead of calling
    the gateway again.
    """

    def __init__(
        self,
        *,
        gateway: TextGenerationGateway,
        store: ContextStore,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.settings = settings if settings is not None else RuntimeSettings.from_env()

    def _produce(
        self,
        *,
        case_id: str,
        stage: str,
        schema: type[ModelT],
        system_prompt: str,
        user_prompt: Callable[[dict[str, Any]], str],
        output_path: str,
        input_paths: list[str],
        required_paths: list[str] | None = None,
        validate: Callable[[ModelT], None] | None = None,
        stored_form: Callable[[ModelT], Any] | None = None,
    ) -> StageResult[ModelT]:
        if self.store.exists(case_id, output_path):
            logger.info("case=%s stage=%s reusing stored %s", case_id, stage, output_path)
            return StageResult.success(self.store.load(case_id, output_path, schema), attempts=0)

        snapshot = self.store.build_snapshot(case_id, input_paths)
        required = input_paths if required_paths is None else required_paths
        missing = [path for path in required if path not in snapshot.items]
        if missing:
            return StageResult.failure(
                StageError(
                    kind="missing_input",
                    stage=stage,
                    case_id=case_id,
                    message=f"required context missing: {', '.join(missing)}",
                )
            )
        prompt = user_prompt(snapshot.items)

        def attempt() -> ModelT:
            text = self.gateway.generate_structured(case_id, system_prompt, prompt, schema)
            value = schema.model_validate_json(text)
            if validate is not None:
                validate(value)
            return value

        result = run_with_retries(
            attempt,
            stage=stage,
            case_id=case_id,
            max_attempts=self.settings.max_attempts,
            timeout_seconds=self.settings.call_timeout_seconds,
            backoff_seconds=self.settings.retry_backoff_ms / 1000,
        )
        if result.ok and result.value is not None:
            self.store.save(case_id, output_path, stored_form(result.value) if stored_form else result.value)
            logger.info(
                "case=%s stage=%s wrote %s in %.2fs (attempts=%d)",
                case_id,
                stage,
                output_path,
                result.duration_seconds,
                result.attempts,
            )
        return result

    # -- plan ------------------------------------------------------------

    def plan_core(self, case_id: str, request: GenerationRequest, profile: DifficultyProfile) -> StageResult[PlanCore]:
        constraints = "\n".join(f"- {item}" for item in request.constraints) or "- none"
        return self._produce(
            case_id=case_id,
            stage="plan.core",
            schema=PlanCore,
            system_prompt=PLAN_CORE_SYSTEM,
            user_prompt=lambda _items: (
                f"{profile.prompt_block()}\ntimezone: {request.timezone}\n"
                f"Constraints from the requester:\n{constraints}"
            ),
            output_path=PLAN_CORE,
            input_paths=[],
        )

    def plan_suspects(self, case_id: str, profile: DifficultyProfile) -> StageResult[PlanSuspects]:
        def validate(value: PlanSuspects) -> None:
            _require_count(len(value.suspects), profile.suspects, "suspect")
            _require_unique([s.suspect_id for s in value.suspects], "suspect")
            if sum(1 for s in value.suspects if s.is_culprit) != 1:
                raise MalformedOutputError("exactly one suspect must be marked as culprit")

        return self._produce(
            case_id=case_id,
            stage="plan.suspects",
            schema=PlanSuspects,
            system_prompt=PLAN_SUSPECTS_SYSTEM,
            user_prompt=lambda items: f"{profile.prompt_block()}\nContext:\n{_context_block(items)}",
            output_path=PLAN_SUSPECTS,
            input_paths=[PLAN_CORE],
            validate=validate,
        )

    def plan_timeline(self, case_id: str, profile: DifficultyProfile) -> StageResult[PlanTimeline]:
        def validate(value: PlanTimeline) -> None:
            if not value.events:
                raise MalformedOutputError("timeline must contain at least one event")

        return self._produce(
            case_id=case_id,
            stage="plan.timeline",
            schema=PlanTimeline,
            system_prompt=PLAN_TIMELINE_SYSTEM,
            user_prompt=lambda items: f"{profile.prompt_block()}\nContext:\n{_context_block(items)}",
            output_path=PLAN_TIMELINE,
            input_paths=[PLAN_CORE, PLAN_SUSPECTS],
            validate=validate,
        )

    def plan_evidence(self, case_id: str, profile: DifficultyProfile) -> StageResult[PlanEvidence]:
        def validate(value: PlanEvidence) -> None:
            _require_count(len(value.evidence), profile.evidence, "evidence")
            _require_unique([e.evidence_id for e in value.evidence], "evidence")

        return self._produce(
            case_id=case_id,
            stage="plan.evidence",
            schema=PlanEvidence,
            system_prompt=PLAN_EVIDENCE_SYSTEM,
            user_prompt=lambda items: f"{profile.prompt_block()}\nContext:\n{_context_block(items)}",
            output_path=PLAN_EVIDENCE,
            input_paths=[PLAN_CORE, PLAN_SUSPECTS, PLAN_TIMELINE],
            validate=validate,
        )

    # -- expand ----------------------------------------------------------

    def expand_suspect(self, case_id: str, suspect_id: str, profile: DifficultyProfile) -> StageResult[ExpandedSuspect]:
        def validate(value: ExpandedSuspect) -> None:
            if value.suspect_id != suspect_id:
                raise MalformedOutputError(f"expected suspect {suspect_id}, got {value.suspect_id}")

        return self._produce(
            case_id=case_id,
            stage="expand.suspect",
            schema=ExpandedSuspect,
            system_prompt=EXPAND_SUSPECT_SYSTEM,
            user_prompt=lambda items: (
                f"{profile.prompt_block()}\nTarget id: {suspect_id}\nContext:\n{_context_block(items)}"
            ),
            output_path=f"{EXPAND_SUSPECTS}/{suspect_id}",
            input_paths=[PLAN_CORE, PLAN_SUSPECTS],
            validate=validate,
        )

    def expand_evidence(
        self, case_id: str, evidence_id: str, profile: DifficultyProfile
    ) -> StageResult[ExpandedEvidence]:
        def validate(value: ExpandedEvidence) -> None:
            if value.evidence_id != evidence_id:
                raise MalformedOutputError(f"expected evidence {evidence_id}, got {value.evidence_id}")

        return self._produce(
            case_id=case_id,
            stage="expand.evidence",
            schema=ExpandedEvidence,
            system_prompt=EXPAND_EVIDENCE_SYSTEM,
            user_prompt=lambda items: (
                f"{profile.prompt_block()}\nTarget id: {evidence_id}\nContext:\n{_context_block(items)}"
            ),
            output_path=f"{EXPAND_EVIDENCE}/{evidence_id}",
            input_paths=[PLAN_CORE, PLAN_EVIDENCE, PLAN_TIMELINE],
            validate=validate,
        )

    def expand_timeline(self, case_id: str, profile: DifficultyProfile) -> StageResult[ExpandedTimeline]:
        def validate(value: ExpandedTimeline) -> None:
            if not value.events:
                raise MalformedOutputError("expanded timeline must contain at least one event")

        return self._produce(
            case_id=case_id,
            stage="expand.timeline",
            schema=ExpandedTimeline,
            system_prompt=EXPAND_TIMELINE_SYSTEM,
            user_prompt=lambda items: f"{profile.prompt_block()}\nContext:\n{_context_block(items)}",
            output_path=EXPAND_TIMELINE,
            input_paths=[PLAN_CORE, PLAN_TIMELINE, PLAN_EVIDENCE],
            validate=validate,
        )

    def synthesize_relations(self, case_id: str, profile: DifficultyProfile) -> StageResult[RelationSynthesis]:
        expanded = self.store.list_paths(case_id, EXPAND_SUSPECTS) + self.store.list_paths(case_id, EXPAND_EVIDENCE)
        return self._produce(
            case_id=case_id,
            stage="expand.relations",
            schema=RelationSynthesis,
            system_prompt=RELATIONS_SYSTEM,
            user_prompt=lambda items: f"{profile.prompt_block()}\nContext:\n{_context_block(items)}",
            output_path=EXPAND_RELATIONS,
            input_paths=[PLAN_CORE, *expanded],
            required_paths=[PLAN_CORE],
        )

    # -- design ----------------------------------------------------------

    def design_documents(self, case_id: str, profile: DifficultyProfile) -> StageResult[DocumentDesign]:
        def validate(value: DocumentDesign) -> None:
            _require_count(len(value.documents), profile.documents, "document")
            _require_unique([doc.doc_id for doc in value.documents], "document")
            for doc in value.documents:
                if doc.gated and doc.gating_rule is None:
                    raise MalformedOutputError(f"gated document {doc.doc_id} has no gating_rule")

        return self._produce(
            case_id=case_id,
            stage="design.documents",
            schema=DocumentDesign,
            system_prompt=DESIGN_DOCUMENTS_SYSTEM,
            user_prompt=lambda items: f"{profile.prompt_block()}\nContext:\n{_context_block(items)}",
            output_path=DESIGN_DOCUMENTS,
            input_paths=[PLAN_CORE, PLAN_SUSPECTS, PLAN_EVIDENCE, EXPAND_TIMELINE, EXPAND_RELATIONS],
            required_paths=[PLAN_CORE, PLAN_SUSPECTS, PLAN_EVIDENCE],
            validate=validate,
        )

    def design_media(self, case_id: str, profile: DifficultyProfile) -> StageResult[MediaDesign]:
        def validate(value: MediaDesign) -> None:
            _require_count(len(value.media), profile.evidence, "media evidence")
            _require_unique([item.evidence_id for item in value.media], "media evidence")

        result = self._produce(
            case_id=case_id,
            stage="design.media",
            schema=MediaDesign,
            system_prompt=DESIGN_MEDIA_SYSTEM,
            user_prompt=lambda items: f"{profile.prompt_block()}\nContext:\n{_context_block(items)}",
            output_path=DESIGN_MEDIA,
            input_paths=[PLAN_EVIDENCE, *self.store.list_paths(case_id, EXPAND_EVIDENCE)],
            required_paths=[PLAN_EVIDENCE],
            validate=validate,
        )
        if result.ok and result.value is not None:
            self.store.save(case_id, VISUAL_REGISTRY, result.value.visual_registry)
        return result

    # -- generate --------------------------------------------------------

    def generate_document(
        self, case_id: str, spec: DocumentSpec, profile: DifficultyProfile
    ) -> StageResult[GeneratedDocument]:
        evidence_paths: list[str] = []
        if spec.gating_rule is not None and spec.gating_rule.evidence_id:
            evidence_paths.append(f"{EXPAND_EVIDENCE}/{spec.gating_rule.evidence_id}")

        def validate(value: GeneratedDocument) -> None:
            if value.doc_id != spec.doc_id:
                raise MalformedOutputError(f"expected document {spec.doc_id}, got {value.doc_id}")
            if not value.sections:
                raise MalformedOutputError(f"document {spec.doc_id} has no sections")
            written = {section.title.strip().lower() for section in value.sections}
            absent = [title for title in spec.sections if title.strip().lower() not in written]
            if absent:
                raise MalformedOutputError(f"document {spec.doc_id} is missing sections: {', '.join(absent)}")

        def stored_form(value: GeneratedDocument) -> dict[str, Any]:
            record = value.model_dump(mode="json")
            record.update(
                type=spec.type,
                length_target=list(spec.length_target),
                gated=spec.gated,
                gating_rule=spec.gating_rule.model_dump(mode="json") if spec.gating_rule else None,
            )
            return record

        return self._produce(
            case_id=case_id,
            stage="generate.document",
            schema=GeneratedDocument,
            system_prompt=GENERATE_DOCUMENT_SYSTEM,
            user_prompt=lambda items: (
                f"{profile.prompt_block()}\nTarget id: {spec.doc_id}\n"
                f"Length target (words): {spec.length_target[0]}-{spec.length_target[1]}\n"
                f"Spec:\n{spec.model_dump_json(indent=2)}\nContext:\n{_context_block(items)}"
            ),
            output_path=f"{GENERATED_DOCUMENTS}/{spec.doc_id}",
            input_paths=[PLAN_CORE, EXPAND_TIMELINE, EXPAND_RELATIONS, *evidence_paths],
            required_paths=[PLAN_CORE],
            validate=validate,
            stored_form=stored_form,
        )

    def generate_media(self, case_id: str, spec: MediaSpec, profile: DifficultyProfile) -> StageResult[GeneratedMedia]:
        def validate(value: GeneratedMedia) -> None:
            if value.evidence_id != spec.evidence_id:
                raise MalformedOutputError(f"expected media {spec.evidence_id}, got {value.evidence_id}")
            if not value.prompt.strip():
                raise MalformedOutputError(f"media {spec.evidence_id} has an empty prompt")

        def stored_form(value: GeneratedMedia) -> dict[str, Any]:
            record = value.model_dump(mode="json")
            record.update(
                kind=spec.kind,
                constraints=spec.constraints,
                deferred=spec.deferred,
                gated=spec.gated,
                gating_rule=spec.gating_rule.model_dump(mode="json") if spec.gating_rule else None,
            )
            return record

        return self._produce(
            case_id=case_id,
            stage="generate.media",
            schema=GeneratedMedia,
            system_prompt=GENERATE_MEDIA_SYSTEM,
            user_prompt=lambda items: (
                f"{profile.prompt_block()}\nTarget id: {spec.evidence_id}\n"
                f"Spec:\n{spec.model_dump_json(indent=2)}\nContext:\n{_context_block(items)}"
            ),
            output_path=f"{GENERATED_MEDIA}/{spec.evidence_id}",
            input_paths=[VISUAL_REGISTRY, f"{EXPAND_EVIDENCE}/{spec.evidence_id}"],
            required_paths=[],
            validate=validate,
            stored_form=stored_form,
        )
