from importlib.metadata import version

from .canonical import content_hash, to_canonical_json
from .context_store import ContextNotFoundError, ContextStore
from .difficulty import PROFILES, DifficultyProfile, resolve_difficulty
from .execution import BatchResult, StageError, StageResult, run_batch, run_with_retries
from .llm import MalformedOutputError, OpenAIGateway, TextGenerationGateway
from .models import (
    CaseManifest,
    ContextSnapshot,
    FixAction,
    GatingGraph,
    GenerationRequest,
    GlobalRedTeamAnalysis,
    IssuePriority,
    NormalizedCaseBundle,
    NormalizedDocument,
    NormalizedMedia,
    PipelineState,
    PipelineStatus,
    PipelineStep,
    PreciseIssue,
    StructuredRedTeamAnalysis,
    ValidationResult,
    ValidationStatus,
)
from .normalizer import Normalizer, build_gating_graph, detect_cycles
from .orchestrator import CaseGenerationOrchestrator, CaseRunResult
from .packager import Packager, Renderer, build_manifest
from .precision_editor import EditResult, PrecisionEditor
from .producers import StageProducers
from .redteam import RedTeamAnalyzer, RedTeamCache
from .settings import RuntimeSettings


def get_version() -> str:
    try:
        return version("casegen-engine")
    except Exception:
        return "0.0.0"


__all__ = [
    "BatchResult",
    "CaseGenerationOrchestrator",
    "CaseManifest",
    "CaseRunResult",
    "ContextNotFoundError",
    "ContextSnapshot",
    "ContextStore",
    "DifficultyProfile",
    "EditResult",
    "FixAction",
    "GatingGraph",
    "GenerationRequest",
    "GlobalRedTeamAnalysis",
    "IssuePriority",
    "MalformedOutputError",
    "NormalizedCaseBundle",
    "NormalizedDocument",
    "NormalizedMedia",
    "Normalizer",
    "OpenAIGateway",
    "Packager",
    "PipelineState",
    "PipelineStatus",
    "PipelineStep",
    "PreciseIssue",
    "PrecisionEditor",
    "PROFILES",
    "RedTeamAnalyzer",
    "RedTeamCache",
    "Renderer",
    "RuntimeSettings",
    "StageError",
    "StageProducers",
    "StageResult",
    "StructuredRedTeamAnalysis",
    "TextGenerationGateway",
    "ValidationResult",
    "ValidationStatus",
    "build_gating_graph",
    "build_manifest",
    "content_hash",
    "detect_cycles",
    "get_version",
    "resolve_difficulty",
    "run_batch",
    "run_with_retries",
    "to_canonical_json",
]
