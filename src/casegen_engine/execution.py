from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Generic, Literal, TypeVar

from pydantic import ValidationError

from .llm import MalformedOutputError

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

ErrorKind = Literal["transient", "malformed", "timeout", "missing_input"]


@dataclass(frozen=True)
class StageError:
    kind: ErrorKind
    stage: str
    case_id: str
    message: str
    attempts: int = 0

    def describe(self) -> str:
        return f"{self.stage} failed for case {self.case_id} ({self.kind}, attempts={self.attempts}): {self.message}"


@dataclass
class StageResult(Generic[T]):
    """Outcome of one stage operation; exactly one of ``value``/``error`` is set."""

    value: T | None = None
    error: StageError | None = None
    duration_seconds: float = 0.0
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, *, duration_seconds: float = 0.0, attempts: int = 1) -> "StageResult[T]":
        return cls(value=value, duration_seconds=duration_seconds, attempts=attempts)

    @classmethod
    def failure(cls, error: StageError, *, duration_seconds: float = 0.0) -> "StageResult[T]":
        return cls(error=error, duration_seconds=duration_seconds, attempts=error.attempts)


@dataclass
class BatchResult(Generic[K, T]):
    """Per-task results of a fan-out batch, aggregated after every task finished."""

    results: dict[K, StageResult[T]] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results.values())

    @property
    def values(self) -> dict[K, T]:
        return {key: result.value for key, result in self.results.items() if result.ok and result.value is not None}

    @property
    def errors(self) -> list[StageError]:
        return [result.error for result in self.results.values() if result.error is not None]

    def first_error(self) -> StageError | None:
        errors = self.errors
        return errors[0] if errors else None


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, (TimeoutError, FutureTimeoutError)):
        return "timeout"
    if isinstance(exc, (MalformedOutputError, ValidationError, json.JSONDecodeError)):
        return "malformed"
    return "transient"


def _call_with_timeout(operation: Callable[[], T], timeout_seconds: float | None) -> T:
    if timeout_seconds is None:
        return operation()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="casegen-call")
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout_seconds)
    finally:
        # A timed-out call keeps running in the background; its result is discarded.
        executor.shutdown(wait=False, cancel_futures=True)


def run_with_retries(
    operation: Callable[[], T],
    *,
    stage: str,
    case_id: str,
    max_attempts: int = 3,
    timeout_seconds: float | None = None,
    backoff_seconds: float = 0.0,
    retry_on: frozenset[ErrorKind] = frozenset({"transient", "malformed", "timeout"}),
) -> StageResult[T]:
    """Run *operation* up to ``max_attempts`` times and report the outcome as a StageResult.

    Each failed attempt is logged with the attempt counter. Failures whose kind is
    not in ``retry_on`` stop immediately. The delay between attempts starts at
    ``backoff_seconds`` and doubles on each subsequent attempt.

    Args:
        operation: Zero-argument callable performing one attempt.
        stage: Stage label used in logs and errors.
        case_id: Case the call belongs to.
        max_attempts: Upper bound on attempts, at least 1.
        timeout_seconds: Per-attempt timeout; a timeout counts as a failed attempt.
        backoff_seconds: Initial delay between attempts.
        retry_on: Error kinds that are worth another attempt.

    Returns:
        StageResult carrying the value, or the StageError of the last attempt.
    """
    started = time.monotonic()
    attempts = max(1, max_attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            value = _call_with_timeout(operation, timeout_seconds)
        except Exception as exc:  # noqa: BLE001 - every failure becomes a StageError
            kind = classify_exception(exc)
            message = str(exc) or type(exc).__name__
            error = StageError(kind=kind, stage=stage, case_id=case_id, message=message, attempts=attempt)
            logger.warning(
                "case=%s stage=%s attempt %d/%d failed (%s): %s",
                case_id,
                stage,
                attempt,
                attempts,
                kind,
                message,
            )
            if kind not in retry_on or attempt >= attempts:
                logger.error("case=%s stage=%s exhausted after %d attempt(s)", case_id, stage, attempt)
                return StageResult.failure(error, duration_seconds=time.monotonic() - started)
            if backoff_seconds > 0:
                time.sleep(backoff_seconds * (2 ** (attempt - 1)))
            continue
        return StageResult.success(value, duration_seconds=time.monotonic() - started, attempts=attempt)


def run_batch(
    tasks: Iterable[tuple[K, Callable[[], StageResult[T]]]],
    *,
    max_workers: int,
    stage: str,
    case_id: str,
) -> BatchResult[K, T]:
    """Run independent stage tasks concurrently and capture each task's result.

    Tasks are expected to report failures through their StageResult. An
    exception escaping a task is captured as a transient failure for that key
    so one task never aborts its siblings.
    """
    started = time.monotonic()
    task_list = list(tasks)
    batch: BatchResult[K, T] = BatchResult()
    if not task_list:
        return batch
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(task_list))), thread_name_prefix=stage) as pool:
        futures = {key: pool.submit(task) for key, task in task_list}
        for key, future in futures.items():
            try:
                batch.results[key] = future.result()
            except Exception as exc:  # noqa: BLE001 - isolate sibling tasks
                logger.exception("case=%s stage=%s task %s raised", case_id, stage, key)
                batch.results[key] = StageResult.failure(
                    StageError(kind="transient", stage=stage, case_id=case_id, message=str(exc), attempts=1)
                )
    batch.duration_seconds = time.monotonic() - started
    failed = [key for key, result in batch.results.items() if not result.ok]
    logger.info(
        "case=%s stage=%s batch finished: %d task(s), %d failed, %.2fs",
        case_id,
        stage,
        len(batch.results),
        len(failed),
        batch.duration_seconds,
    )
    return batch
