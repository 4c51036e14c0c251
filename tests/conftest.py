from __future__ import annotations

import json
import re
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Callable

import pytest
from pydantic import BaseModel

from casegen_engine.redteam import FOCUSED_SYSTEM_PROMPT, GLOBAL_SYSTEM_PROMPT
from casegen_engine.settings import RuntimeSettings

_RANGE_RE = re.compile(r"^(suspect|document|evidence)_count_range: (\d+)-(\d+)$", re.MULTILINE)
_TARGET_RE = re.compile(r"^Target id: (\S+)$", re.MULTILINE)
_SPEC_RE = re.compile(r"^Spec:\n(.*?)\nContext:", re.MULTILINE | re.DOTALL)

CREATED_AT = "2024-03-01T10:00:00"


def _ranges(prompt: str) -> dict[str, tuple[int, int]]:
    return {name: (int(low), int(high)) for name, low, high in _RANGE_RE.findall(prompt)}


def _target(prompt: str) -> str:
    match = _TARGET_RE.search(prompt)
    assert match is not None, "per-item prompt must name its target id"
    return match.group(1)


def _spec(prompt: str) -> dict[str, Any]:
    match = _SPEC_RE.search(prompt)
    assert match is not None, "generation prompt must embed the design spec"
    return json.loads(match.group(1))


def analysis_payload(user_prompt: str) -> dict[str, Any]:
    return json.loads(user_prompt[user_prompt.index("{") :])


class FakeGateway:
    """Deterministic TextGenerationGateway answering each stage from its prompt alone.

    Structured replies are keyed by schema class name; ``overrides`` replaces a
    reply builder and ``failures`` makes the next N calls for a schema raise.
    RedTeam calls are answered from ``global_reply`` and ``focused_reply``.
    """

    def __init__(
        self,
        *,
        overrides: dict[str, Callable[[str], Any]] | None = None,
        failures: dict[str, int] | None = None,
        global_reply: dict[str, Any] | str | None = None,
        focused_reply: Callable[[dict[str, Any]], dict[str, Any] | str] | None = None,
    ) -> None:
        self.overrides = dict(overrides or {})
        self.failures = dict(failures or {})
        self.global_reply = global_reply if global_reply is not None else {"overall_assessment": "consistent"}
        self.focused_reply = focused_reply or (lambda _payload: {"issues": [], "summary": "clean"})
        self.calls: Counter[str] = Counter()
        self._lock = threading.Lock()

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls[name] += 1
            remaining = self.failures.get(name, 0)
            if remaining:
                self.failures[name] = remaining - 1
                raise RuntimeError(f"simulated outage for {name}")

    # -- free text -------------------------------------------------------

    def generate(self, case_id: str, system_prompt: str, user_prompt: str) -> str:
        if system_prompt == GLOBAL_SYSTEM_PROMPT:
            self._record("global")
            reply = self.global_reply
        elif system_prompt == FOCUSED_SYSTEM_PROMPT:
            self._record("focused")
            reply = self.focused_reply(analysis_payload(user_prompt))
        else:
            raise AssertionError(f"unexpected free-text prompt: {system_prompt[:60]}")
        return reply if isinstance(reply, str) else json.dumps(reply)

    # -- structured ------------------------------------------------------

    def generate_structured(self, case_id: str, system_prompt: str, user_prompt: str, schema: type[BaseModel]) -> str:
        name = schema.__name__
        self._record(name)
        builder = self.overrides.get(name) or getattr(self, f"_{name}")
        reply = builder(user_prompt)
        return reply if isinstance(reply, str) else json.dumps(reply)

    @staticmethod
    def _PlanCore(prompt: str) -> dict[str, Any]:
        return {
            "title": "The Harbor Ledger",
            "synopsis": "A bookkeeper is found dead in the harbor office.",
            "crime_type": "homicide",
            "victim": "Ana Ruiz",
            "location": "Harbor office",
            "incident_datetime": "2024-03-01T21:00:00",
        }

    @staticmethod
    def _PlanSuspects(prompt: str) -> dict[str, Any]:
        count = _ranges(prompt)["suspect"][0]
        return {
            "suspects": [
                {"suspect_id": f"sus_{n:03d}", "name": f"Suspect {n}", "role": "employee", "is_culprit": n == 1}
                for n in range(1, count + 1)
            ]
        }

    @staticmethod
    def _PlanTimeline(prompt: str) -> dict[str, Any]:
        return {"events": [{"timestamp": "2024-03-01T21:00:00", "description": "Victim last seen"}]}

    @staticmethod
    def _PlanEvidence(prompt: str) -> dict[str, Any]:
        count = _ranges(prompt)["evidence"][0]
        return {
            "evidence": [
                {"evidence_id": f"ev_item{n}", "name": f"Item {n}", "kind": "photo"} for n in range(1, count + 1)
            ]
        }

    @staticmethod
    def _ExpandedSuspect(prompt: str) -> dict[str, Any]:
        suspect_id = _target(prompt)
        return {
            "suspect_id": suspect_id,
            "name": f"Profile {suspect_id}",
            "background": "Worked at the harbor for ten years.",
            "alibi": "Claims to have been at home.",
            "motive": "Debt",
        }

    @staticmethod
    def _ExpandedEvidence(prompt: str) -> dict[str, Any]:
        evidence_id = _target(prompt)
        return {
            "evidence_id": evidence_id,
            "name": f"Evidence {evidence_id}",
            "description": "Collected at the scene.",
            "chain_of_custody": ["Officer Lee", "Evidence room"],
        }

    @staticmethod
    def _ExpandedTimeline(prompt: str) -> dict[str, Any]:
        return {"events": [{"timestamp": "2024-03-01T21:00:00", "description": "Victim last seen"}]}

    @staticmethod
    def _RelationSynthesis(prompt: str) -> dict[str, Any]:
        return {"relations": [{"source": "sus_001", "target": "ev_item1", "kind": "owns"}]}

    @staticmethod
    def _DocumentDesign(prompt: str) -> dict[str, Any]:
        count = _ranges(prompt)["document"][0]
        documents = [
            {
                "doc_id": "doc_001",
                "type": "forensics_report",
                "title": "Forensics report",
                "sections": ["Summary", "Chain of Custody"],
            }
        ]
        documents += [
            {
                "doc_id": f"doc_{n:03d}",
                "type": "witness_statement",
                "title": f"Statement {n}",
                "sections": ["Summary", "Details"],
            }
            for n in range(2, count + 1)
        ]
        return {"documents": documents}

    @staticmethod
    def _MediaDesign(prompt: str) -> dict[str, Any]:
        count = _ranges(prompt)["evidence"][0]
        ids = [f"ev_item{n}" for n in range(1, count + 1)]
        return {
            "media": [
                {"evidence_id": evidence_id, "kind": "photo", "title": f"Photo of {evidence_id}"}
                for evidence_id in ids
            ],
            "visual_registry": {evidence_id: "grey ledger, torn cover" for evidence_id in ids},
        }

    @staticmethod
    def _GeneratedDocument(prompt: str) -> dict[str, Any]:
        spec = _spec(prompt)
        doc_id = _target(prompt)
        return {
            "doc_id": doc_id,
            "type": spec["type"],
            "title": spec["title"],
            "created_at": CREATED_AT,
            "sections": [
                {"title": title, "content": f"{title} of {doc_id}. The incident occurred at 21:00."}
                for title in spec["sections"]
            ],
        }

    @staticmethod
    def _GeneratedMedia(prompt: str) -> dict[str, Any]:
        spec = _spec(prompt)
        return {
            "evidence_id": _target(prompt),
            "kind": spec["kind"],
            "title": spec["title"],
            "prompt": "Photograph of a grey ledger with a torn cover",
            "caption": spec["title"],
            "created_at": CREATED_AT,
        }


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(
        store_root=str(tmp_path / "store"),
        checkpoint_db=str(tmp_path / "checkpoints" / "orchestrator.sqlite"),
        call_timeout_seconds=30,
        retry_backoff_ms=0,
    ).normalized()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
