from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .models import (
    DocumentSection,
    FixAction,
    FixOutcome,
    IssuePriority,
    NormalizedCaseBundle,
    NormalizedDocument,
    PreciseIssue,
)

logger = logging.getLogger(__name__)

MOVED_TO_ADDENDUM = "[Moved to addendum - see post-incident analysis]"
SKELETON_DOC_ID = "skeleton"

_EVIDENCE_ID_RE = re.compile(r"ev_\w+\d+")
_PATH_TOKEN_RE = re.compile(r"\[(\d+)\]|([^.\[\]]+)")
_INLINE_SPACE_RE = re.compile(r"[ \t]{2,}")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"[ \t]+([.,;:])")
_PRIORITY_ORDER = {IssuePriority.HIGH: 0, IssuePriority.MEDIUM: 1, IssuePriority.LOW: 2}


@dataclass
class EditResult:
    bundle: NormalizedCaseBundle
    outcomes: list[FixOutcome] = field(default_factory=list)

    @property
    def applied(self) -> list[FixOutcome]:
        return [outcome for outcome in self.outcomes if outcome.applied]

    @property
    def unapplied(self) -> list[FixOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.applied]


# ---------------------------------------------------------------------------
# Field path helpers
# ---------------------------------------------------------------------------


def parse_field_path(path: str) -> list[str | int]:
    """Split ``sections[0].content`` into ``["sections", 0, "content"]``."""
    tokens: list[str | int] = []
    for index, name in _PATH_TOKEN_RE.findall(path):
        tokens.append(int(index) if index else name)
    if not tokens:
        raise ValueError(f"Empty field path: {path!r}")
    return tokens


def get_field(data: Any, path: str) -> Any:
    current = data
    for token in parse_field_path(path):
        current = current[token]
    return current


def set_field(data: Any, path: str, value: Any) -> None:
    """Assign *value* at *path*; intermediate containers must already exist.

    Raises:
        KeyError, IndexError, TypeError: If the path does not resolve.
    """
    tokens = parse_field_path(path)
    parent = data
    for token in tokens[:-1]:
        parent = parent[token]
    last = tokens[-1]
    if isinstance(parent, dict) and isinstance(last, str) and last not in parent:
        raise KeyError(last)
    parent[last] = value


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _collapse_spaces(text: str) -> str:
    return _SPACE_BEFORE_PUNCT_RE.sub(r"\1", _INLINE_SPACE_RE.sub(" ", text))


def _target_sections(doc: NormalizedDocument, section: str | None) -> list[DocumentSection]:
    if section:
        wanted = section.strip().lower()
        matching = [item for item in doc.sections if item.title.strip().lower() == wanted]
        if matching:
            return matching
    return list(doc.sections)


def _edit_text(doc: NormalizedDocument, old: str, new: str, *, section: str | None = None, tidy: bool = False) -> bool:
    """Replace *old* with *new* in the document body; returns whether anything changed."""
    changed = False
    if doc.sections:
        for item in _target_sections(doc, section):
            if old in item.content:
                updated = item.content.replace(old, new)
                updated = _collapse_spaces(updated) if tidy else updated
                if updated != item.content:
                    item.content = updated
                    changed = True
        if changed:
            doc.content = "\n\n".join(item.content for item in doc.sections if item.content)
    elif old in doc.content:
        updated = doc.content.replace(old, new)
        updated = _collapse_spaces(updated) if tidy else updated
        changed = updated != doc.content
        doc.content = updated
    return changed


# ---------------------------------------------------------------------------
# Editor
# ---------------------------------------------------------------------------


class PrecisionEditor:
    """Applies located, typed fixes to a copy of the bundle instead of regenerating documents.

    Issues are applied highest priority first. A fix that cannot be located is
    recorded as unapplied and the batch continues.
    """

    def apply(self, bundle: NormalizedCaseBundle, issues: list[PreciseIssue]) -> EditResult:
        working = bundle.model_copy(deep=True)
        result = EditResult(bundle=working)
        for issue in sorted(issues, key=lambda item: _PRIORITY_ORDER[item.priority]):
            doc_id = issue.location.doc_id.strip()
            if not doc_id or doc_id == SKELETON_DOC_ID:
                result.outcomes.append(FixOutcome(issue=issue, applied=False, reason="issue has no target document"))
                continue
            try:
                applied, reason = self._apply_one(working, issue)
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                applied, reason = False, f"fix could not be applied: {exc!r}"
            if not applied:
                logger.warning(
                    "case=%s unapplied %s on %s: %s",
                    bundle.case_id,
                    issue.fix.action.value,
                    doc_id,
                    reason,
                )
            result.outcomes.append(FixOutcome(issue=issue, applied=applied, reason=reason))
        logger.info(
            "case=%s precision edit applied %d/%d fix(es)",
            bundle.case_id,
            len(result.applied),
            len(result.outcomes),
        )
        return result

    def _apply_one(self, bundle: NormalizedCaseBundle, issue: PreciseIssue) -> tuple[bool, str]:
        action = issue.fix.action
        if action is FixAction.GENERATE_MISSING_DOCUMENT:
            return self._generate_missing_document(bundle, issue)

        index = next(
            (i for i, doc in enumerate(bundle.documents) if doc.doc_id == issue.location.doc_id.strip()),
            None,
        )
        if index is None:
            return False, f"document {issue.location.doc_id} not found"

        handlers = {
            FixAction.UPDATE_TIMESTAMP: self._update_timestamp,
            FixAction.REPLACE_TEXT: self._replace_text,
            FixAction.MOVE_TO_ADDENDUM: self._move_to_addendum,
            FixAction.REMOVE_REFERENCE: self._remove_reference,
            FixAction.ADD_MEDIA_ATTACHMENT: self._add_media_attachment,
        }
        return handlers[action](bundle, index, issue)

    @staticmethod
    def _set_document_field(bundle: NormalizedCaseBundle, index: int, path: str, value: Any) -> bool:
        data = bundle.documents[index].model_dump(mode="json")
        if get_field(data, path) == value:
            return False
        set_field(data, path, value)
        bundle.documents[index] = NormalizedDocument.model_validate(data)
        return True

    def _update_timestamp(self, bundle: NormalizedCaseBundle, index: int, issue: PreciseIssue) -> tuple[bool, str]:
        new_value = issue.fix.new_value or issue.fix.new_text
        if not new_value:
            return False, "no new timestamp supplied"
        location = issue.location
        if location.field:
            if self._set_document_field(bundle, index, location.field, new_value):
                return True, f"set {location.field}"
            return False, f"{location.field} already holds the new value"
        old = location.current_value or location.line_pattern or issue.fix.old_text
        if not old:
            return False, "no field or text pattern to update"
        if _edit_text(bundle.documents[index], old, new_value, section=location.section):
            return True, "timestamp replaced in content"
        return False, f"timestamp pattern not found: {old!r}"

    def _replace_text(self, bundle: NormalizedCaseBundle, index: int, issue: PreciseIssue) -> tuple[bool, str]:
        location = issue.location
        old = issue.fix.old_text or location.current_value or location.line_pattern
        new = issue.fix.new_text if issue.fix.new_text is not None else issue.fix.new_value
        if not old or new is None:
            return False, "replacement needs both old and new text"
        if old == new:
            return False, "replacement leaves text unchanged"
        if location.field:
            current = get_field(bundle.documents[index].model_dump(mode="json"), location.field)
            if not isinstance(current, str) or old not in current:
                return False, f"text not found in {location.field}"
            if not self._set_document_field(bundle, index, location.field, current.replace(old, new)):
                return False, f"{location.field} unchanged by replacement"
            return True, f"replaced text in {location.field}"
        if _edit_text(bundle.documents[index], old, new, section=location.section):
            return True, "replaced text in content"
        return False, f"text not found: {old!r}"

    def _move_to_addendum(self, bundle: NormalizedCaseBundle, index: int, issue: PreciseIssue) -> tuple[bool, str]:
        text = issue.fix.old_text or issue.location.current_value or issue.location.line_pattern
        if not text:
            return False, "no text to move"
        doc = bundle.documents[index]
        if not _edit_text(doc, text, MOVED_TO_ADDENDUM, section=issue.location.section):
            return False, f"text not found: {text!r}"
        doc.addendum.append(issue.fix.new_section or text)
        return True, "moved text to addendum"

    def _remove_reference(self, bundle: NormalizedCaseBundle, index: int, issue: PreciseIssue) -> tuple[bool, str]:
        text = issue.location.current_value or issue.fix.old_text or issue.location.line_pattern
        if not text:
            return False, "no reference text to remove"
        doc = bundle.documents[index]
        changed = _edit_text(doc, text, "", section=issue.location.section, tidy=True)
        if text in doc.media_refs:
            doc.media_refs.remove(text)
            changed = True
        return (True, "reference removed") if changed else (False, f"reference not found: {text!r}")

    def _add_media_attachment(
        self, bundle: NormalizedCaseBundle, index: int, issue: PreciseIssue
    ) -> tuple[bool, str]:
        match = None
        for text in (issue.fix.new_value, issue.fix.new_text, issue.location.current_value, issue.problem):
            match = _EVIDENCE_ID_RE.search(text or "")
            if match is not None:
                break
        if match is None:
            return False, "no evidence id found in fix"
        evidence_id = match.group(0)
        if bundle.media_item(evidence_id) is None:
            return False, f"evidence {evidence_id} does not exist in bundle"
        doc = bundle.documents[index]
        if evidence_id in doc.media_refs:
            return False, f"{evidence_id} already attached"
        doc.media_refs.append(evidence_id)
        return True, f"attached {evidence_id}"

    @staticmethod
    def _generate_missing_document(bundle: NormalizedCaseBundle, issue: PreciseIssue) -> tuple[bool, str]:
        doc_id = (issue.fix.new_value or issue.location.doc_id).strip()
        if not doc_id or doc_id == SKELETON_DOC_ID:
            return False, "no document id to generate"
        if bundle.document(doc_id) is not None:
            return False, f"document {doc_id} already exists"
        body = issue.fix.new_text or issue.problem or "Placeholder pending regeneration."
        bundle.documents.append(
            NormalizedDocument(
                doc_id=doc_id,
                type="supplementary_report",
                title=issue.fix.new_section or f"Supplementary report {doc_id}",
                sections=[DocumentSection(title="Summary", content=body)],
                content=body,
                placeholder=True,
            )
        )
        return True, f"inserted placeholder document {doc_id}"
