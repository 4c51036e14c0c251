from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, TypeVar

from pydantic import BaseModel, ValidationError

from .canonical import content_hash
from .execution import StageResult, run_batch, run_with_retries
from .llm import TextGenerationGateway, strip_code_fences
from .models import (
    GlobalRedTeamAnalysis,
    NormalizedCaseBundle,
    StructuredRedTeamAnalysis,
    ValidationResult,
    ValidationStatus,
)
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

AnalysisT = TypeVar("AnalysisT", GlobalRedTeamAnalysis, StructuredRedTeamAnalysis)

GLOBAL_ANALYSIS = "global"
FOCUSED_ANALYSIS = "focused"

GLOBAL_SYSTEM_PROMPT = (
    "You are a red-team reviewer of a generated investigative case file. Review the whole bundle for "
    "macro-level defects only: CrossDocumentInconsistency, ChronologicalGap, NarrativeContradiction, "
    "ReferenceIntegrity, StructuralCompleteness. Do not propose edits. Respond with a JSON object: "
    '{"macro_issues": [{"type": str, "severity": "Critical|Major|Minor", "affected_documents": [doc_id], '
    '"description": str, "required_focus_areas": [str]}], "critical_documents": [doc_id], '
    '"focus_areas": [str], "overall_assessment": str, "requires_detailed_analysis": bool}'
)

FOCUSED_SYSTEM_PROMPT = (
    "You are a red-team reviewer inspecting one document of an investigative case file together with "
    "its direct dependencies. Report each defect with its exact location and one deterministic fix. "
    "Allowed fix actions: UpdateTimestamp, ReplaceText, MoveToAddendum, RemoveReference, "
    "AddMediaAttachment, GenerateMissingDocument. Respond with a JSON object: "
    '{"issues": [{"priority": "High|Medium|Low", "type": str, "location": {"doc_id": str, "field": str|null, '
    '"section": str|null, "line_pattern": str|null, "current_value": str|null}, "problem": str, '
    '"fix": {"action": str, "new_value": str|null, "old_text": str|null, "new_text": str|null, '
    '"new_section": str|null, "reason": str|null}}], "summary": str}'
)


# ---------------------------------------------------------------------------
# Analysis cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RedTeamCacheEntry:
    content_hash: str
    analysis_type: str
    result: dict[str, Any]
    focus_areas: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class RedTeamCache:
    """Content-hash keyed store of analysis results.

    Concurrent writers for the same key store identical results, so plain
    last-write-wins dict assignment is enough.
    """

    def __init__(self) -> None:
        self._entries: dict[str, RedTeamCacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def compute_content_hash(payload: Any) -> str:
        return content_hash(payload)

    @staticmethod
    def cache_key(digest: str, analysis_type: str, focus_areas: list[str] | tuple[str, ...] | None = None) -> str:
        key = f"{digest}:{analysis_type}"
        if focus_areas:
            key += ":" + ",".join(sorted(focus_areas))
        return key

    def get(
        self,
        digest: str,
        analysis_type: str,
        focus_areas: list[str] | tuple[str, ...] | None = None,
    ) -> dict[str, Any] | None:
        entry = self._entries.get(self.cache_key(digest, analysis_type, focus_areas))
        return dict(entry.result) if entry is not None else None

    def put(
        self,
        digest: str,
        analysis_type: str,
        result: BaseModel | dict[str, Any],
        focus_areas: list[str] | tuple[str, ...] | None = None,
    ) -> None:
        payload = result.model_dump(mode="json") if isinstance(result, BaseModel) else dict(result)
        self._entries[self.cache_key(digest, analysis_type, focus_areas)] = RedTeamCacheEntry(
            content_hash=digest,
            analysis_type=analysis_type,
            result=payload,
            focus_areas=tuple(sorted(focus_areas or ())),
        )

    def clear_expired(self, max_age: timedelta) -> int:
        cutoff = datetime.now(UTC) - max_age
        expired = [key for key, entry in self._entries.items() if entry.created_at < cutoff]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Removed %d expired analysis cache entr(ies)", len(expired))
        return len(expired)


# ---------------------------------------------------------------------------
# Fallbacks and parsing
# ---------------------------------------------------------------------------


def fallback_global_analysis(reason: str) -> GlobalRedTeamAnalysis:
    return GlobalRedTeamAnalysis(
        overall_assessment=f"Fallback analysis used: {reason}",
        requires_detailed_analysis=False,
        fallback=True,
    )


def fallback_structured_analysis(reason: str) -> StructuredRedTeamAnalysis:
    return StructuredRedTeamAnalysis(summary=f"Fallback analysis used: {reason}", fallback=True)


def _parse_analysis(text: str, schema: type[AnalysisT]) -> AnalysisT | None:
    cleaned = strip_code_fences(text or "")
    if not cleaned:
        return None
    try:
        return schema.model_validate(json.loads(cleaned))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Discarding malformed %s response: %s", schema.__name__, exc)
        return None


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class RedTeamAnalyzer:
    """Two-tier consistency analysis: one global pass, then focused passes per flagged document."""

    def __init__(
        self,
        *,
        gateway: TextGenerationGateway,
        cache: RedTeamCache | None = None,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.gateway = gateway
        self.cache = cache if cache is not None else RedTeamCache()
        self.settings = settings if settings is not None else RuntimeSettings.from_env()

    # -- payloads --------------------------------------------------------

    @staticmethod
    def global_payload(bundle: NormalizedCaseBundle, validation_results: list[ValidationResult]) -> dict[str, Any]:
        return {
            "case_id": bundle.case_id,
            "difficulty": bundle.difficulty,
            "timezone": bundle.timezone,
            "documents": [doc.model_dump(mode="json") for doc in bundle.documents],
            "media": [item.model_dump(mode="json") for item in bundle.media],
            "gating_graph": bundle.gating_graph.model_dump(mode="json"),
            "validation_failures": [
                result.model_dump(mode="json")
                for result in validation_results
                if result.status is not ValidationStatus.PASS
            ],
        }

    @staticmethod
    def focused_payload(
        bundle: NormalizedCaseBundle, doc_id: str, global_analysis: GlobalRedTeamAnalysis
    ) -> dict[str, Any]:
        target = bundle.document(doc_id)
        dependencies: list[dict[str, Any]] = []
        for linked in sorted(bundle.gating_graph.neighbours(doc_id)):
            linked_doc = bundle.document(linked)
            if linked_doc is not None:
                dependencies.append(linked_doc.model_dump(mode="json"))
                continue
            linked_media = bundle.media_item(linked)
            if linked_media is not None:
                dependencies.append(linked_media.model_dump(mode="json"))
        return {
            "target": target.model_dump(mode="json") if target is not None else {"doc_id": doc_id},
            "dependencies": dependencies,
            "macro_issues": [
                issue.model_dump(mode="json")
                for issue in global_analysis.macro_issues
                if doc_id in issue.affected_documents
            ],
        }

    # -- gateway call ----------------------------------------------------

    def _cached_call(
        self,
        *,
        case_id: str,
        stage: str,
        analysis_type: str,
        payload: dict[str, Any],
        system_prompt: str,
        schema: type[AnalysisT],
        fallback: Callable[[str], AnalysisT],
        focus_areas: list[str] | None = None,
    ) -> StageResult[AnalysisT]:
        digest = self.cache.compute_content_hash(payload)
        cached = self.cache.get(digest, analysis_type, focus_areas)
        if cached is not None:
            logger.info("case=%s stage=%s cache hit %s", case_id, stage, digest[:12])
            return StageResult.success(schema.model_validate(cached), attempts=0)

        user_prompt = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
        if focus_areas:
            user_prompt = f"Focus areas: {', '.join(sorted(focus_areas))}\n{user_prompt}"
        result = run_with_retries(
            lambda: self.gateway.generate(case_id, system_prompt, user_prompt),
            stage=stage,
            case_id=case_id,
            max_attempts=self.settings.max_attempts,
            timeout_seconds=self.settings.call_timeout_seconds,
            backoff_seconds=self.settings.retry_backoff_ms / 1000,
            retry_on=frozenset({"transient", "timeout"}),
        )
        if not result.ok:
            return StageResult.failure(result.error, duration_seconds=result.duration_seconds)

        analysis = _parse_analysis(result.value or "", schema)
        if analysis is None:
            logger.warning("case=%s stage=%s degraded to fallback analysis", case_id, stage)
            return StageResult.success(
                fallback("empty or malformed response"),
                duration_seconds=result.duration_seconds,
                attempts=result.attempts,
            )
        self.cache.put(digest, analysis_type, analysis, focus_areas)
        return StageResult.success(analysis, duration_seconds=result.duration_seconds, attempts=result.attempts)

    # -- passes ----------------------------------------------------------

    def analyze_global(
        self,
        case_id: str,
        bundle: NormalizedCaseBundle,
        validation_results: list[ValidationResult] | None = None,
    ) -> StageResult[GlobalRedTeamAnalysis]:
        """Run (or reuse) the whole-bundle macro analysis."""
        return self._cached_call(
            case_id=case_id,
            stage="redteam.global",
            analysis_type=GLOBAL_ANALYSIS,
            payload=self.global_payload(bundle, validation_results or []),
            system_prompt=GLOBAL_SYSTEM_PROMPT,
            schema=GlobalRedTeamAnalysis,
            fallback=fallback_global_analysis,
        )

    def analyze_document(
        self,
        case_id: str,
        bundle: NormalizedCaseBundle,
        doc_id: str,
        global_analysis: GlobalRedTeamAnalysis,
    ) -> StageResult[StructuredRedTeamAnalysis]:
        result = self._cached_call(
            case_id=case_id,
            stage="redteam.focused",
            analysis_type=FOCUSED_ANALYSIS,
            payload=self.focused_payload(bundle, doc_id, global_analysis),
            system_prompt=FOCUSED_SYSTEM_PROMPT,
            schema=StructuredRedTeamAnalysis,
            fallback=fallback_structured_analysis,
            focus_areas=list(global_analysis.focus_areas),
        )
        if result.ok and result.value is not None:
            for issue in result.value.issues:
                if not issue.location.doc_id:
                    issue.location.doc_id = doc_id
        return result

    def analyze_focused(
        self,
        case_id: str,
        bundle: NormalizedCaseBundle,
        global_analysis: GlobalRedTeamAnalysis,
    ) -> StageResult[StructuredRedTeamAnalysis]:
        """Inspect each flagged document with only its direct dependencies and merge the issues."""
        if not global_analysis.requires_detailed_analysis:
            logger.info("case=%s global analysis requested no detailed pass", case_id)
            return StageResult.success(StructuredRedTeamAnalysis(summary="Detailed analysis not required"))
        known = {doc.doc_id for doc in bundle.documents}
        flagged = [doc_id for doc_id in global_analysis.flagged_documents() if doc_id in known]
        unknown = [doc_id for doc_id in global_analysis.flagged_documents() if doc_id not in known]
        if unknown:
            logger.info("case=%s ignoring flagged ids absent from bundle: %s", case_id, ", ".join(unknown))
        if not flagged:
            return StageResult.success(StructuredRedTeamAnalysis(summary="No documents flagged for detailed analysis"))

        tasks = [
            (doc_id, lambda doc_id=doc_id: self.analyze_document(case_id, bundle, doc_id, global_analysis))
            for doc_id in flagged
        ]
        batch = run_batch(
            tasks,
            max_workers=self.settings.max_concurrency,
            stage="redteam.focused",
            case_id=case_id,
        )
        error = batch.first_error()
        if error is not None:
            return StageResult.failure(error, duration_seconds=batch.duration_seconds)

        merged = StructuredRedTeamAnalysis()
        summaries: list[str] = []
        for doc_id in flagged:
            analysis = batch.values[doc_id]
            merged.issues.extend(analysis.issues)
            merged.fallback = merged.fallback or analysis.fallback
            if analysis.summary:
                summaries.append(f"{doc_id}: {analysis.summary}")
        merged.summary = "\n".join(summaries)
        logger.info(
            "case=%s focused analysis over %d document(s): high=%d medium=%d low=%d",
            case_id,
            len(flagged),
            merged.high_priority_count,
            merged.medium_priority_count,
            merged.low_priority_count,
        )
        return StageResult.success(merged, duration_seconds=batch.duration_seconds, attempts=1)
