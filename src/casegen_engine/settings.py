from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    store_root: str = "case_store"
    checkpoint_db: str = "case_store/checkpoints/orchestrator.sqlite"
    model_content: str = "gpt-4o"
    model_analysis: str = "gpt-4o-mini"
    max_attempts: int = 3
    call_timeout_seconds: int = 120
    max_fix_iterations: int = 3
    max_concurrency: int = 4
    context_cache_ttl_minutes: int = 30
    analysis_cache_max_age_minutes: int = 1_440
    recursion_limit: int = 200
    retry_backoff_ms: int = 500

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            store_root=os.getenv("CASEGEN_STORE_ROOT", "case_store"),
            checkpoint_db=os.getenv("CASEGEN_CHECKPOINT_DB", "case_store/checkpoints/orchestrator.sqlite"),
            model_content=os.getenv("CASEGEN_MODEL_CONTENT", "gpt-4o"),
            model_analysis=os.getenv("CASEGEN_MODEL_ANALYSIS", "gpt-4o-mini"),
            max_attempts=_get_env_int("CASEGEN_MAX_ATTEMPTS", default=3, minimum=1, maximum=10),
            call_timeout_seconds=_get_env_int("CASEGEN_CALL_TIMEOUT_SECONDS", default=120, minimum=5, maximum=3_600),
            max_fix_iterations=_get_env_int("CASEGEN_MAX_FIX_ITERATIONS", default=3, minimum=1, maximum=20),
            max_concurrency=_get_env_int("CASEGEN_MAX_CONCURRENCY", default=4, minimum=1, maximum=64),
            context_cache_ttl_minutes=_get_env_int("CASEGEN_CONTEXT_CACHE_TTL_MINUTES", default=30, minimum=0),
            analysis_cache_max_age_minutes=_get_env_int(
                "CASEGEN_ANALYSIS_CACHE_MAX_AGE_MINUTES", default=1_440, minimum=1
            ),
            recursion_limit=_get_env_int("CASEGEN_RECURSION_LIMIT", default=200, minimum=50),
            retry_backoff_ms=_get_env_int("CASEGEN_RETRY_BACKOFF_MS", default=500, minimum=0, maximum=60_000),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_content = self.model_content.strip()
        if not model_content:
            raise ValueError("CASEGEN_MODEL_CONTENT must be non-empty")
        model_analysis = self.model_analysis.strip()
        if not model_analysis:
            raise ValueError("CASEGEN_MODEL_ANALYSIS must be non-empty")

        if not self.store_root.strip():
            raise ValueError("CASEGEN_STORE_ROOT must be non-empty")
        if not self.checkpoint_db.strip():
            raise ValueError("CASEGEN_CHECKPOINT_DB must be non-empty")

        if self.recursion_limit > 100_000:
            raise ValueError(f"CASEGEN_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")
        # Each fix iteration walks four graph nodes on top of the linear stages.
        required_steps = 12 + 4 * self.max_fix_iterations
        if self.recursion_limit < required_steps:
            raise ValueError(
                f"CASEGEN_RECURSION_LIMIT must be >= {required_steps} for "
                f"CASEGEN_MAX_FIX_ITERATIONS={self.max_fix_iterations}, got: {self.recursion_limit}"
            )
        return RuntimeSettings(
            store_root=self.store_root.strip(),
            checkpoint_db=self.checkpoint_db.strip(),
            model_content=model_content,
            model_analysis=model_analysis,
            max_attempts=self.max_attempts,
            call_timeout_seconds=self.call_timeout_seconds,
            max_fix_iterations=self.max_fix_iterations,
            max_concurrency=self.max_concurrency,
            context_cache_ttl_minutes=self.context_cache_ttl_minutes,
            analysis_cache_max_age_minutes=self.analysis_cache_max_age_minutes,
            recursion_limit=self.recursion_limit,
            retry_backoff_ms=self.retry_backoff_ms,
        )

    def store_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.store_root)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path

    def checkpoint_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.checkpoint_db)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
