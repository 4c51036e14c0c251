from __future__ import annotations

import logging
import random
import sqlite3
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .context_store import ContextStore
from .difficulty import PROFILES, DifficultyProfile, resolve_difficulty
from .execution import StageError, StageResult, run_batch, run_with_retries
from .llm import TextGenerationGateway
from .models import (
    CaseManifest,
    DocumentDesign,
    GenerationRequest,
    GlobalRedTeamAnalysis,
    MediaDesign,
    NormalizedCaseBundle,
    PipelineState,
    PipelineStatus,
    PipelineStep,
    PlanEvidence,
    PlanSuspects,
    PreciseIssue,
    RenderedFile,
    StructuredRedTeamAnalysis,
    ValidationResult,
    ValidationStatus,
)
from .normalizer import Normalizer, parse_document, parse_media, structural_failures
from .packager import Packager, Renderer
from .precision_editor import PrecisionEditor
from .producers import (
    DESIGN_DOCUMENTS,
    DESIGN_MEDIA,
    GENERATED_DOCUMENTS,
    GENERATED_MEDIA,
    PLAN_EVIDENCE,
    PLAN_SUSPECTS,
    REQUEST_PATH,
    StageProducers,
)
from .redteam import RedTeamAnalyzer, RedTeamCache
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

STATUS_PATH = "pipeline/status"
NORMALIZE_REPORT_PATH = "normalize/report"
VALIDATION_REPORT_PATH = "validate/report"
BUNDLE_PATH = "normalize/bundle"
GLOBAL_ANALYSIS_PATH = "redteam/global"
FOCUSED_ANALYSIS_PATH = "redteam/focused"
FIX_OUTCOMES_PREFIX = "fix/iteration"


class CaseState(TypedDict, total=False):
    case_id: str
    request: dict[str, Any]
    difficulty: str
    completed_steps: list[str]
    iteration: int
    rendered: list[dict[str, Any]]
    bundle: dict[str, Any] | None
    validation_results: list[dict[str, Any]]
    global_analysis: dict[str, Any] | None
    focused_analysis: dict[str, Any] | None
    residual_issues: list[dict[str, Any]]
    manifest: dict[str, Any] | None
    error: dict[str, Any] | None
    state: str


@dataclass
class CaseRunResult:
    case_id: str
    status: PipelineStatus
    bundle: NormalizedCaseBundle | None = None
    manifest: CaseManifest | None = None
    validation_results: list[ValidationResult] = field(default_factory=list)
    residual_issues: list[PreciseIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status.state is PipelineState.COMPLETED


class CaseGenerationOrchestrator:
    """Case pipeline implemented as a checkpointed LangGraph StateGraph.

    Plan, Expand, Design and Generate run once; Normalize builds the bundle;
    RuleValidate, the two RedTeam passes and Fix form a bounded repair loop
    before Package. Every node persists the case ``PipelineStatus`` so a
    crashed run can be inspected and resumed under the same thread id.
    """

    def __init__(
        self,
        gateway: TextGenerationGateway,
        *,
        settings: RuntimeSettings | None = None,
        store_root: str | Path | None = None,
        renderer: Renderer | None = None,
        analysis_gateway: TextGenerationGateway | None = None,
        cache: RedTeamCache | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        root = Path(store_root) if store_root is not None else self.settings.store_path()
        self.store = ContextStore(root, cache_ttl_minutes=self.settings.context_cache_ttl_minutes)
        self.producers = StageProducers(gateway=gateway, store=self.store, settings=self.settings)
        self.normalizer = Normalizer()
        self.analyzer = RedTeamAnalyzer(
            gateway=analysis_gateway if analysis_gateway is not None else gateway,
            cache=cache,
            settings=self.settings,
        )
        self.editor = PrecisionEditor()
        self.packager = Packager(root)
        self.renderer = renderer
        self.rng = rng

        self.checkpoint_path = Path(self.settings.checkpoint_db)
        if not self.checkpoint_path.is_absolute():
            self.checkpoint_path = (
                root / "checkpoints" / "orchestrator.sqlite"
                if store_root is not None
                else self.settings.checkpoint_path()
            )
        self.checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
        self._checkpoint_conn = sqlite3.connect(self.checkpoint_path, check_same_thread=False)
        self._checkpointer = SqliteSaver(self._checkpoint_conn)
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(CaseState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("expand", self._expand_node)
        graph.add_node("design", self._design_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("render", self._render_node)
        graph.add_node("normalize", self._normalize_node)
        graph.add_node("rule_validate", self._rule_validate_node)
        graph.add_node("redteam_global", self._redteam_global_node)
        graph.add_node("redteam_focused", self._redteam_focused_node)
        graph.add_node("fix", self._fix_node)
        graph.add_node("package", self._package_node)
        graph.add_node("failed", self._failed_node)

        graph.add_edge(START, "plan")
        linear = [
            ("plan", "expand"),
            ("expand", "design"),
            ("design", "generate"),
            ("generate", "render"),
            ("render", "normalize"),
            ("normalize", "rule_validate"),
            ("rule_validate", "redteam_global"),
            ("redteam_global", "redteam_focused"),
        ]
        for source, target in linear:
            graph.add_conditional_edges(
                source,
                self._error_route(target),
                {
                    target: target,
                    "failed": "failed",
                },
            )
        graph.add_edge("package", END)
        graph.add_edge("failed", END)
        return graph

    @staticmethod
    def _error_route(target: str) -> Callable[[CaseState], str]:
        def route(state: CaseState) -> str:
            return "failed" if state.get("error") else target

        return route

    # ------------------------------------------------------------------
    # Bookkeeping helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _profile(state: CaseState) -> DifficultyProfile:
        return PROFILES[state["difficulty"]]

    @staticmethod
    def _request(state: CaseState) -> GenerationRequest:
        return GenerationRequest.model_validate(state["request"])

    def _write_status(
        self,
        state: CaseState,
        *,
        current_step: PipelineStep | None,
        completed_steps: list[str],
        pipeline_state: PipelineState = PipelineState.RUNNING,
        error: StageError | None = None,
        iteration: int | None = None,
    ) -> None:
        status = PipelineStatus(
            case_id=state["case_id"],
            difficulty=state.get("difficulty"),
            state=pipeline_state,
            current_step=current_step,
            completed_steps=[PipelineStep(step) for step in completed_steps],
            fix_iterations=state.get("iteration", 0) if iteration is None else iteration,
            error=error.describe() if error is not None else None,
            error_stage=error.stage if error is not None else None,
        )
        self.store.save(state["case_id"], STATUS_PATH, status)

    def _start(self, state: CaseState, step: PipelineStep) -> float:
        logger.info("case=%s step=%s started", state["case_id"], step.value)
        self._write_status(state, current_step=step, completed_steps=list(state.get("completed_steps", [])))
        return time.monotonic()

    def _done(self, state: CaseState, step: PipelineStep, started: float, /, **updates: Any) -> dict[str, Any]:
        completed = list(state.get("completed_steps", []))
        if step.value not in completed:
            completed.append(step.value)
        self._write_status(
            state,
            current_step=None,
            completed_steps=completed,
            iteration=updates.get("iteration"),
        )
        logger.info(
            "case=%s step=%s completed in %.2fs",
            state["case_id"],
            step.value,
            time.monotonic() - started,
        )
        return {"completed_steps": completed, **updates}

    @staticmethod
    def _fail(error: StageError | None, **updates: Any) -> dict[str, Any]:
        if error is None:
            raise RuntimeError("stage reported failure without a StageError")
        return {"error": asdict(error), **updates}

    def _run_steps(self, steps: list[Callable[[], StageResult[Any]]]) -> StageError | None:
        for step in steps:
            result = step()
            if not result.ok:
                return result.error
        return None

    # ------------------------------------------------------------------
    # Generation nodes
    # ------------------------------------------------------------------

    def _plan_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.PLAN)
        profile = self._profile(state)
        request = self._request(state)
        error = self._run_steps(
            [
                lambda: self.producers.plan_core(case_id, request, profile),
                lambda: self.producers.plan_suspects(case_id, profile),
                lambda: self.producers.plan_timeline(case_id, profile),
                lambda: self.producers.plan_evidence(case_id, profile),
            ]
        )
        if error is not None:
            return self._fail(error)
        return self._done(state, PipelineStep.PLAN, started)

    def _expand_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.EXPAND)
        profile = self._profile(state)
        suspects = self.store.load(case_id, PLAN_SUSPECTS, PlanSuspects)
        evidence = self.store.load(case_id, PLAN_EVIDENCE, PlanEvidence)

        tasks: list[tuple[str, Callable[[], StageResult[Any]]]] = [
            (
                f"suspect:{item.suspect_id}",
                lambda suspect_id=item.suspect_id: self.producers.expand_suspect(case_id, suspect_id, profile),
            )
            for item in suspects.suspects
        ]
        tasks += [
            (
                f"evidence:{item.evidence_id}",
                lambda evidence_id=item.evidence_id: self.producers.expand_evidence(case_id, evidence_id, profile),
            )
            for item in evidence.evidence
        ]
        tasks.append(("timeline", lambda: self.producers.expand_timeline(case_id, profile)))
        batch = run_batch(tasks, max_workers=self.settings.max_concurrency, stage="expand", case_id=case_id)
        if not batch.ok:
            return self._fail(batch.first_error())

        relations = self.producers.synthesize_relations(case_id, profile)
        if not relations.ok:
            return self._fail(relations.error)
        return self._done(state, PipelineStep.EXPAND, started)

    def _design_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.DESIGN)
        profile = self._profile(state)
        batch = run_batch(
            [
                ("documents", lambda: self.producers.design_documents(case_id, profile)),
                ("media", lambda: self.producers.design_media(case_id, profile)),
            ],
            max_workers=self.settings.max_concurrency,
            stage="design",
            case_id=case_id,
        )
        if not batch.ok:
            return self._fail(batch.first_error())
        return self._done(state, PipelineStep.DESIGN, started)

    def _generate_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.GENERATE)
        profile = self._profile(state)
        documents = self.store.load(case_id, DESIGN_DOCUMENTS, DocumentDesign)
        media = self.store.load(case_id, DESIGN_MEDIA, MediaDesign)

        doc_tasks = [
            (spec.doc_id, lambda spec=spec: self.producers.generate_document(case_id, spec, profile))
            for spec in documents.documents
        ]
        media_tasks = [
            (spec.evidence_id, lambda spec=spec: self.producers.generate_media(case_id, spec, profile))
            for spec in media.media
        ]
        workers = self.settings.max_concurrency
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="generate") as pool:
            doc_future = pool.submit(
                run_batch, doc_tasks, max_workers=workers, stage="generate.documents", case_id=case_id
            )
            media_future = pool.submit(
                run_batch, media_tasks, max_workers=workers, stage="generate.media", case_id=case_id
            )
            doc_batch = doc_future.result()
            media_batch = media_future.result()

        error = doc_batch.first_error() or media_batch.first_error()
        if error is not None:
            return self._fail(error)
        return self._done(state, PipelineStep.GENERATE, started)

    def _render_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.RENDER)
        request = self._request(state)
        if self.renderer is None or not (request.render_files or request.generate_images):
            logger.info("case=%s render skipped (renderer=%s)", case_id, self.renderer is not None)
            return self._done(state, PipelineStep.RENDER, started, rendered=[])

        renderer = self.renderer
        tasks: list[tuple[str, Callable[[], StageResult[RenderedFile]]]] = []
        if request.render_files:
            for path, raw in sorted(self.store.query(case_id, f"{GENERATED_DOCUMENTS}/*").items()):
                try:
                    document = parse_document(raw)
                except (ValueError, TypeError) as exc:
                    logger.warning("case=%s render skipping %s: %s", case_id, path, exc)
                    continue
                tasks.append(
                    (
                        f"document:{document.doc_id}",
                        lambda document=document: self._render_call(
                            case_id, lambda: renderer.render_document(case_id, document)
                        ),
                    )
                )
        if request.generate_images:
            for path, raw in sorted(self.store.query(case_id, f"{GENERATED_MEDIA}/*").items()):
                try:
                    item = parse_media(raw)
                except (ValueError, TypeError) as exc:
                    logger.warning("case=%s render skipping %s: %s", case_id, path, exc)
                    continue
                if item.deferred:
                    continue
                tasks.append(
                    (
                        f"media:{item.evidence_id}",
                        lambda item=item: self._render_call(case_id, lambda: renderer.render_media(case_id, item)),
                    )
                )

        batch = run_batch(tasks, max_workers=self.settings.max_concurrency, stage="render", case_id=case_id)
        if not batch.ok:
            return self._fail(batch.first_error())
        rendered = [batch.values[key].model_dump(mode="json") for key, _task in tasks]
        return self._done(state, PipelineStep.RENDER, started, rendered=rendered)

    def _render_call(self, case_id: str, operation: Callable[[], RenderedFile]) -> StageResult[RenderedFile]:
        return run_with_retries(
            operation,
            stage="render",
            case_id=case_id,
            max_attempts=self.settings.max_attempts,
            timeout_seconds=self.settings.call_timeout_seconds,
            backoff_seconds=self.settings.retry_backoff_ms / 1000,
        )

    # ------------------------------------------------------------------
    # Normalize / repair loop
    # ------------------------------------------------------------------

    def _normalize_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.NORMALIZE)
        request = self._request(state)
        documents = [raw for _path, raw in sorted(self.store.query(case_id, f"{GENERATED_DOCUMENTS}/*").items())]
        media = [raw for _path, raw in sorted(self.store.query(case_id, f"{GENERATED_MEDIA}/*").items())]
        result = self.normalizer.normalize(
            case_id=case_id,
            documents=documents,
            media=media,
            profile=self._profile(state),
            timezone=request.timezone,
        )
        self.store.save(
            case_id,
            NORMALIZE_REPORT_PATH,
            {
                "validation_results": [item.model_dump(mode="json") for item in result.validation_results],
                "log_entries": [item.model_dump(mode="json") for item in result.log_entries],
            },
        )
        if not result.bundle.documents:
            return self._fail(
                StageError(
                    kind="missing_input",
                    stage="normalize",
                    case_id=case_id,
                    message="no parseable documents to normalize",
                )
            )
        self.store.save(case_id, BUNDLE_PATH, result.bundle)
        return self._done(
            state,
            PipelineStep.NORMALIZE,
            started,
            bundle=result.bundle.model_dump(mode="json"),
        )

    def _rule_validate_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.RULE_VALIDATE)
        bundle = NormalizedCaseBundle.model_validate(state["bundle"])
        result = self.normalizer.renormalize(bundle, self._profile(state))
        self.store.save(case_id, BUNDLE_PATH, result.bundle)
        self.store.save(
            case_id,
            VALIDATION_REPORT_PATH,
            [item.model_dump(mode="json") for item in result.validation_results],
        )
        failures = result.failures
        logger.info(
            "case=%s rule validation iteration=%d: %d rule(s), %d failure(s)",
            case_id,
            state.get("iteration", 0),
            len(result.validation_results),
            len(failures),
        )
        return self._done(
            state,
            PipelineStep.RULE_VALIDATE,
            started,
            bundle=result.bundle.model_dump(mode="json"),
            validation_results=[item.model_dump(mode="json") for item in result.validation_results],
        )

    def _redteam_global_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.REDTEAM_GLOBAL)
        swept = self.analyzer.cache.clear_expired(timedelta(minutes=self.settings.analysis_cache_max_age_minutes))
        if swept:
            logger.info("case=%s swept %d expired analysis cache entr(ies)", case_id, swept)
        bundle = NormalizedCaseBundle.model_validate(state["bundle"])
        validation = [ValidationResult.model_validate(item) for item in state.get("validation_results", [])]
        result = self.analyzer.analyze_global(case_id, bundle, validation)
        if not result.ok or result.value is None:
            return self._fail(result.error)
        self.store.save(case_id, GLOBAL_ANALYSIS_PATH, result.value)
        return self._done(
            state,
            PipelineStep.REDTEAM_GLOBAL,
            started,
            global_analysis=result.value.model_dump(mode="json"),
        )

    def _redteam_focused_node(self, state: CaseState) -> Command[str]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.REDTEAM_FOCUSED)
        bundle = NormalizedCaseBundle.model_validate(state["bundle"])
        global_analysis = GlobalRedTeamAnalysis.model_validate(state["global_analysis"])
        result = self.analyzer.analyze_focused(case_id, bundle, global_analysis)
        if not result.ok or result.value is None:
            return Command(goto="failed", update=self._fail(result.error))
        analysis = result.value
        self.store.save(case_id, FOCUSED_ANALYSIS_PATH, analysis)
        update = self._done(
            state,
            PipelineStep.REDTEAM_FOCUSED,
            started,
            focused_analysis=analysis.model_dump(mode="json"),
        )
        goto, extra = self._loop_decision(state, analysis)
        update.update(extra)
        return Command(goto=goto, update=update)

    def _loop_decision(
        self, state: CaseState, analysis: StructuredRedTeamAnalysis
    ) -> tuple[str, dict[str, Any]]:
        """Pick fix, package or failed after a full analysis pass."""
        case_id = state["case_id"]
        iteration = state.get("iteration", 0)
        validation = [ValidationResult.model_validate(item) for item in state.get("validation_results", [])]
        failures = [item for item in validation if item.status is ValidationStatus.FAIL]
        blocking = analysis.blocking_issues
        residual = [issue.model_dump(mode="json") for issue in analysis.issues]

        if not blocking and not failures:
            logger.info("case=%s fix loop converged after %d iteration(s)", case_id, iteration)
            return "package", {"residual_issues": residual}

        # Without any located issue another pass would reproduce the same analysis.
        exhausted = iteration >= self.settings.max_fix_iterations or not analysis.issues
        if not exhausted:
            logger.info(
                "case=%s fix loop iteration %d: %d blocking issue(s), %d failing rule(s)",
                case_id,
                iteration + 1,
                len(blocking),
                len(failures),
            )
            return "fix", {}

        structural = structural_failures(validation)
        if structural:
            error = StageError(
                kind="malformed",
                stage="rule_validate",
                case_id=case_id,
                message="unresolved structural failures: "
                + "; ".join(f"{item.rule}: {item.description}" for item in structural),
                attempts=iteration,
            )
            logger.error("case=%s %s", case_id, error.describe())
            return "failed", self._fail(error)

        logger.warning(
            "case=%s packaging with %d residual issue(s) and %d failing rule(s) after %d iteration(s)",
            case_id,
            len(residual),
            len(failures),
            iteration,
        )
        return "package", {"residual_issues": residual}

    def _fix_node(self, state: CaseState) -> Command[str]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.FIX)
        bundle = NormalizedCaseBundle.model_validate(state["bundle"])
        analysis = StructuredRedTeamAnalysis.model_validate(state["focused_analysis"])
        iteration = state.get("iteration", 0) + 1
        edit = self.editor.apply(bundle, analysis.issues)
        self.store.save(
            case_id,
            f"{FIX_OUTCOMES_PREFIX}-{iteration}",
            [outcome.model_dump(mode="json") for outcome in edit.outcomes],
        )
        logger.info(
            "case=%s fix iteration %d applied %d, unapplied %d",
            case_id,
            iteration,
            len(edit.applied),
            len(edit.unapplied),
        )
        update = self._done(
            state,
            PipelineStep.FIX,
            started,
            iteration=iteration,
            bundle=edit.bundle.model_dump(mode="json"),
        )
        return Command(goto="rule_validate", update=update)

    # ------------------------------------------------------------------
    # Terminal nodes
    # ------------------------------------------------------------------

    def _package_node(self, state: CaseState) -> dict[str, Any]:
        case_id = state["case_id"]
        started = self._start(state, PipelineStep.PACKAGE)
        bundle = NormalizedCaseBundle.model_validate(state["bundle"])
        residual = [PreciseIssue.model_validate(item) for item in state.get("residual_issues", [])]
        bundle.metadata = bundle.metadata.model_copy(
            update={"fix_iterations": state.get("iteration", 0), "residual_issues": residual}
        )
        rendered = [RenderedFile.model_validate(item) for item in state.get("rendered", [])]
        validation = [ValidationResult.model_validate(item) for item in state.get("validation_results", [])]
        try:
            manifest = self.packager.package(bundle, rendered, validation)
        except OSError as exc:
            error = StageError(kind="transient", stage="package", case_id=case_id, message=str(exc), attempts=1)
            logger.error("case=%s %s", case_id, error.describe())
            return self._failed_node({**state, **self._fail(error)})

        update = self._done(
            state,
            PipelineStep.PACKAGE,
            started,
            bundle=bundle.model_dump(mode="json"),
            manifest=manifest.model_dump(mode="json"),
            state=PipelineState.COMPLETED.value,
        )
        self._write_status(
            state,
            current_step=None,
            completed_steps=update["completed_steps"],
            pipeline_state=PipelineState.COMPLETED,
        )
        logger.info("case=%s completed", case_id)
        return update

    def _failed_node(self, state: CaseState) -> dict[str, Any]:
        error = StageError(**state["error"]) if state.get("error") else None
        self._write_status(
            state,
            current_step=None,
            completed_steps=list(state.get("completed_steps", [])),
            pipeline_state=PipelineState.FAILED,
            error=error,
        )
        logger.error(
            "case=%s pipeline failed: %s",
            state["case_id"],
            error.describe() if error is not None else "unknown error",
        )
        return {"state": PipelineState.FAILED.value, "error": state.get("error")}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @staticmethod
    def thread_id(case_id: str) -> str:
        return f"case-{case_id}"

    def _config(self, case_id: str) -> dict[str, Any]:
        return {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": self.thread_id(case_id)},
        }

    def run(self, request: GenerationRequest | None = None, *, case_id: str | None = None) -> CaseRunResult:
        """Start a case, or resume it from its last checkpoint when the thread already exists."""
        case_id = case_id or f"case_{uuid.uuid4().hex[:8]}"
        config = self._config(case_id)
        snapshot = self.graph.get_state(config)
        if snapshot.next:
            logger.info("case=%s resuming at %s", case_id, ", ".join(snapshot.next))
            result = self.graph.invoke(None, config=config)
        elif snapshot.values:
            logger.info("case=%s already finished; returning checkpointed result", case_id)
            result = snapshot.values
        else:
            request = request if request is not None else GenerationRequest()
            profile = resolve_difficulty(request.difficulty, rng=self.rng)
            request = request.model_copy(update={"difficulty": profile.name})
            self.store.save(case_id, REQUEST_PATH, request)
            initial_state: CaseState = {
                "case_id": case_id,
                "request": request.model_dump(mode="json"),
                "difficulty": profile.name,
                "completed_steps": [],
                "iteration": 0,
                "rendered": [],
                "bundle": None,
                "validation_results": [],
                "global_analysis": None,
                "focused_analysis": None,
                "residual_issues": [],
                "manifest": None,
                "error": None,
                "state": PipelineState.RUNNING.value,
            }
            logger.info("case=%s starting difficulty=%s", case_id, profile.name)
            result = self.graph.invoke(initial_state, config=config)
        return self._run_result(case_id, result)

    def _run_result(self, case_id: str, values: dict[str, Any]) -> CaseRunResult:
        bundle = values.get("bundle")
        manifest = values.get("manifest")
        return CaseRunResult(
            case_id=case_id,
            status=self.get_status(case_id),
            bundle=NormalizedCaseBundle.model_validate(bundle) if bundle else None,
            manifest=CaseManifest.model_validate(manifest) if manifest else None,
            validation_results=[ValidationResult.model_validate(item) for item in values.get("validation_results", [])],
            residual_issues=[PreciseIssue.model_validate(item) for item in values.get("residual_issues", [])],
        )

    def get_status(self, case_id: str) -> PipelineStatus:
        """Return the persisted status; raises ContextNotFoundError for an unknown case."""
        return self.store.load(case_id, STATUS_PATH, PipelineStatus)

    def close(self) -> None:
        self._checkpoint_conn.close()

    def __enter__(self) -> "CaseGenerationOrchestrator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
