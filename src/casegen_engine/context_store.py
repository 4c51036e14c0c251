from __future__ import annotations

import fcntl
import fnmatch
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, TypeVar, overload

from pydantic import BaseModel

from .models import ContextMetadata, ContextSnapshot

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_LOCK_SUFFIX = ".lock"
_ITEM_SUFFIX = ".json"


class ContextNotFoundError(LookupError):
    """Raised when a context path has never been saved for a case."""

    def __init__(self, case_id: str, path: str) -> None:
        super().__init__(f"Context path not found for case {case_id}: {path}")
        self.case_id = case_id
        self.path = path


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar next to *path*.

    The sidecar keeps the lock handle valid while the data file itself is
    swapped out by ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path*, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def normalize_path(path: str) -> str:
    """Turn a context reference such as ``@plan/core/`` into the stored key ``plan/core``."""
    normalized = path.strip().lstrip("@/").rstrip("/")
    if not normalized:
        raise ValueError(f"Context path must be non-empty, got: {path!r}")
    if any(part in {"", ".", ".."} for part in normalized.split("/")):
        raise ValueError(f"Context path contains an invalid segment: {path!r}")
    return normalized


def _serialize(value: Any) -> str:
    if isinstance(value, BaseModel):
        return value.model_dump_json(indent=2)
    if isinstance(value, list) and value and all(isinstance(item, BaseModel) for item in value):
        return json.dumps([item.model_dump(mode="json") for item in value], indent=2)
    return json.dumps(value, indent=2, default=str)


# ---------------------------------------------------------------------------
# Context store
# ---------------------------------------------------------------------------


class ContextStore:
    """Path-addressable store of intermediate artifacts, one namespace per case.

    Items live at ``{root}/{case_id}/context/{path}.json``. Writes overwrite by
    path so repeating a stage is harmless, and reads go through a short-lived
    in-memory cache shared by concurrently running stage tasks.
    """

    def __init__(self, root: str | Path, *, cache_ttl_minutes: int = 30) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.cache_ttl_seconds = cache_ttl_minutes * 60
        self._cache: dict[tuple[str, str], tuple[float, str]] = {}
        self._cache_lock = threading.Lock()

    # -- layout ----------------------------------------------------------

    def case_root(self, case_id: str) -> Path:
        if not case_id.strip() or "/" in case_id or case_id in {".", ".."}:
            raise ValueError(f"Invalid case id: {case_id!r}")
        return self.root / case_id

    def context_dir(self, case_id: str) -> Path:
        return self.case_root(case_id) / "context"

    def item_path(self, case_id: str, path: str) -> Path:
        return self.context_dir(case_id) / f"{normalize_path(path)}{_ITEM_SUFFIX}"

    # -- cache -----------------------------------------------------------

    def _cache_get(self, case_id: str, path: str) -> str | None:
        if self.cache_ttl_seconds <= 0:
            return None
        with self._cache_lock:
            hit = self._cache.get((case_id, path))
            if hit is None:
                return None
            stored_at, text = hit
            if time.monotonic() - stored_at > self.cache_ttl_seconds:
                del self._cache[(case_id, path)]
                return None
            return text

    def _cache_put(self, case_id: str, path: str, text: str) -> None:
        if self.cache_ttl_seconds <= 0:
            return
        with self._cache_lock:
            self._cache[(case_id, path)] = (time.monotonic(), text)

    def _cache_drop(self, case_id: str, path: str) -> None:
        with self._cache_lock:
            self._cache.pop((case_id, path), None)

    def clear_cache(self, case_id: str | None = None) -> int:
        """Drop cached reads for one case (or all cases); returns the number of entries removed."""
        with self._cache_lock:
            if case_id is None:
                removed = len(self._cache)
                self._cache.clear()
                return removed
            keys = [key for key in self._cache if key[0] == case_id]
            for key in keys:
                del self._cache[key]
            return len(keys)

    # -- core operations -------------------------------------------------

    def save(self, case_id: str, path: str, value: Any) -> str:
        """Write *value* under *path*, replacing any previous content.

        Returns:
            The normalized path the value was stored under.
        """
        key = normalize_path(path)
        target = self.item_path(case_id, key)
        text = _serialize(value)
        with _locked_file(target):
            atomic_write_text(target, text)
        self._cache_put(case_id, key, text)
        logger.debug("case=%s saved context %s (%d bytes)", case_id, key, len(text.encode("utf-8")))
        return key

    def _read_text(self, case_id: str, key: str) -> str:
        cached = self._cache_get(case_id, key)
        if cached is not None:
            return cached
        target = self.item_path(case_id, key)
        if not target.is_file():
            raise ContextNotFoundError(case_id, key)
        with _locked_file(target):
            text = target.read_text(encoding="utf-8")
        if not text.strip():
            raise ValueError(f"Context item {key} for case {case_id} is empty")
        self._cache_put(case_id, key, text)
        return text

    @overload
    def load(self, case_id: str, path: str) -> Any: ...

    @overload
    def load(self, case_id: str, path: str, model: type[ModelT]) -> ModelT: ...

    def load(self, case_id: str, path: str, model: type[ModelT] | None = None) -> Any:
        """Load the value stored under *path*.

        Args:
            case_id: Owning case.
            path: Context path or ``@`` reference.
            model: Optional pydantic model to validate the stored JSON against.

        Returns:
            The decoded JSON value, or a ``model`` instance when one is given.

        Raises:
            ContextNotFoundError: If nothing was saved under the path.
            pydantic.ValidationError: If the stored value does not fit ``model``.
        """
        key = normalize_path(path)
        text = self._read_text(case_id, key)
        if model is not None:
            return model.model_validate_json(text)
        return json.loads(text)

    def exists(self, case_id: str, path: str) -> bool:
        return self.item_path(case_id, path).is_file()

    def build_snapshot(self, case_id: str, paths: list[str]) -> ContextSnapshot:
        """Resolve each requested path independently into an immutable snapshot.

        Unreadable or missing paths are listed in ``failed_paths`` instead of
        aborting the snapshot; callers decide whether a gap is fatal.
        """
        items: dict[str, Any] = {}
        loaded: list[str] = []
        failed: list[str] = []
        total_size = 0
        for raw_path in paths:
            try:
                key = normalize_path(raw_path)
            except ValueError:
                logger.warning("case=%s invalid context reference %r", case_id, raw_path)
                failed.append(raw_path)
                continue
            if key in items or key in failed:
                continue
            try:
                text = self._read_text(case_id, key)
                items[key] = json.loads(text)
            except (ContextNotFoundError, ValueError, OSError) as exc:
                logger.warning("case=%s snapshot could not load %s: %s", case_id, key, exc)
                failed.append(key)
                continue
            loaded.append(key)
            total_size += len(text.encode("utf-8"))
        snapshot = ContextSnapshot(
            case_id=case_id,
            items=items,
            loaded_paths=loaded,
            failed_paths=failed,
            total_size_bytes=total_size,
            estimated_tokens=total_size // 4,
        )
        logger.debug(
            "case=%s snapshot loaded=%d failed=%d ~%d tokens",
            case_id,
            len(loaded),
            len(failed),
            snapshot.estimated_tokens,
        )
        return snapshot

    # -- listing and querying --------------------------------------------

    def list_paths(self, case_id: str, prefix: str | None = None) -> list[str]:
        base = self.context_dir(case_id)
        if not base.is_dir():
            return []
        paths = sorted(
            item.relative_to(base).as_posix()[: -len(_ITEM_SUFFIX)]
            for item in base.rglob(f"*{_ITEM_SUFFIX}")
            if item.is_file() and not item.name.startswith(".")
        )
        if prefix is None:
            return paths
        wanted = prefix.strip().lstrip("@/")
        return [path for path in paths if path.startswith(wanted)]

    def _match(self, case_id: str, pattern: str) -> list[str]:
        cleaned = pattern.strip().lstrip("@/")
        if any(char in cleaned for char in "*?["):
            return [path for path in self.list_paths(case_id) if fnmatch.fnmatchcase(path, cleaned)]
        return self.list_paths(case_id, prefix=cleaned.rstrip("/"))

    def query(self, case_id: str, pattern: str) -> dict[str, Any]:
        """Load every item whose path matches a prefix or ``*`` wildcard pattern."""
        return {path: self.load(case_id, path) for path in self._match(case_id, pattern)}

    def delete(self, case_id: str, pattern: str) -> int:
        """Delete items matching an exact path, prefix, or wildcard; returns the count removed."""
        removed = 0
        for path in self._match(case_id, pattern):
            target = self.item_path(case_id, path)
            with _locked_file(target):
                target.unlink(missing_ok=True)
            target.with_suffix(target.suffix + _LOCK_SUFFIX).unlink(missing_ok=True)
            self._cache_drop(case_id, path)
            removed += 1
        if removed:
            logger.info("case=%s deleted %d context item(s) matching %s", case_id, removed, pattern)
        return removed

    def get_metadata(self, case_id: str) -> ContextMetadata:
        categories: dict[str, list[str]] = {}
        total_size = 0
        paths = self.list_paths(case_id)
        for path in paths:
            categories.setdefault(path.split("/", 1)[0], []).append(path)
            total_size += self.item_path(case_id, path).stat().st_size
        return ContextMetadata(
            case_id=case_id,
            total_items=len(paths),
            total_size_bytes=total_size,
            categories=categories,
        )
