from typing import Any

from casegen_engine.models import (
    DocumentSection,
    NormalizedCaseBundle,
    NormalizedDocument,
    NormalizedMedia,
    PreciseIssue,
)
from casegen_engine.precision_editor import (
    MOVED_TO_ADDENDUM,
    PrecisionEditor,
    get_field,
    parse_field_path,
    set_field,
)


def _bundle() -> NormalizedCaseBundle:
    sections = [
        DocumentSection(title="Summary", content="Witness saw the suspect at 21:00 near ev_item9 and the dock."),
        DocumentSection(title="Details", content="The lab confirmed the blood type after the arrest."),
    ]
    return NormalizedCaseBundle(
        case_id="case_1",
        difficulty="Rookie",
        documents=[
            NormalizedDocument(
                doc_id="doc_001",
                type="witness_statement",
                title="Statement",
                sections=sections,
                content="\n\n".join(section.content for section in sections),
                created_at="2024-03-01T10:00:00+00:00",
            ),
            NormalizedDocument(doc_id="doc_002", type="police_report", title="Report", content="Filed at 23:00."),
        ],
        media=[NormalizedMedia(evidence_id="ev_item1", kind="photo", title="Ledger")],
    )


def _issue(action: str, *, doc_id: str = "doc_001", priority: str = "High", **fix: Any) -> PreciseIssue:
    location = fix.pop("location", {})
    return PreciseIssue.model_validate(
        {
            "priority": priority,
            "type": "Test",
            "location": {"doc_id": doc_id, **location},
            "problem": fix.pop("problem", "problem"),
            "fix": {"action": action, **fix},
        }
    )


def test_field_path_helpers() -> None:
    data = {"sections": [{"title": "A", "content": "x"}], "created_at": "t"}
    assert parse_field_path("sections[0].content") == ["sections", 0, "content"]
    assert get_field(data, "sections[0].content") == "x"
    set_field(data, "sections[0].content", "y")
    assert data["sections"][0]["content"] == "y"


def test_replace_text_updates_section_and_content() -> None:
    bundle = _bundle()
    result = PrecisionEditor().apply(bundle, [_issue("ReplaceText", old_text="21:00", new_text="22:15")])
    doc = result.bundle.document("doc_001")
    assert [outcome.applied for outcome in result.outcomes] == [True]
    assert "22:15" in doc.sections[0].content
    assert "22:15" in doc.content and "21:00" not in doc.content
    assert "21:00" in bundle.document("doc_001").content


def test_replace_text_with_missing_old_text_leaves_document_unchanged() -> None:
    bundle = _bundle()
    before = bundle.document("doc_001").model_dump()
    result = PrecisionEditor().apply(bundle, [_issue("ReplaceText", old_text="midnight", new_text="noon")])
    assert result.applied == []
    assert len(result.unapplied) == 1
    assert "not found" in result.unapplied[0].reason
    assert result.bundle.document("doc_001").model_dump() == before


def test_replacement_that_changes_nothing_is_unapplied() -> None:
    bundle = _bundle()
    before = bundle.document("doc_001").model_dump()
    issues = [
        _issue("ReplaceText", old_text="21:00", new_text="21:00"),
        _issue("ReplaceText", old_text="Statement", new_text="Statement", location={"field": "title"}),
    ]
    result = PrecisionEditor().apply(bundle, issues)
    assert result.applied == []
    assert [outcome.reason for outcome in result.unapplied] == ["replacement leaves text unchanged"] * 2
    assert result.bundle.document("doc_001").model_dump() == before


def test_remove_reference_already_absent_after_tidy_is_unapplied() -> None:
    result = PrecisionEditor().apply(_bundle(), [_issue("RemoveReference", location={"current_value": "ev_item7"})])
    assert result.applied == []
    assert "not found" in result.unapplied[0].reason


def test_replace_text_in_named_field() -> None:
    result = PrecisionEditor().apply(
        _bundle(),
        [_issue("ReplaceText", old_text="Statement", new_text="Sworn statement", location={"field": "title"})],
    )
    assert result.bundle.document("doc_001").title == "Sworn statement"


def test_update_timestamp_by_field_and_by_pattern() -> None:
    issues = [
        _issue("UpdateTimestamp", new_value="2024-03-01T22:15:00+00:00", location={"field": "created_at"}),
        _issue("UpdateTimestamp", doc_id="doc_002", new_value="22:30", location={"current_value": "23:00"}),
    ]
    result = PrecisionEditor().apply(_bundle(), issues)
    assert all(outcome.applied for outcome in result.outcomes)
    assert result.bundle.document("doc_001").created_at == "2024-03-01T22:15:00+00:00"
    assert result.bundle.document("doc_002").content == "Filed at 22:30."


def test_update_timestamp_with_unresolvable_field_is_unapplied() -> None:
    result = PrecisionEditor().apply(
        _bundle(),
        [_issue("UpdateTimestamp", new_value="x", location={"field": "sections[7].content"})],
    )
    assert len(result.unapplied) == 1
    assert "could not be applied" in result.unapplied[0].reason


def test_move_to_addendum() -> None:
    text = "The lab confirmed the blood type after the arrest."
    result = PrecisionEditor().apply(
        _bundle(), [_issue("MoveToAddendum", old_text=text, location={"section": "Details"})]
    )
    doc = result.bundle.document("doc_001")
    assert doc.sections[1].content == MOVED_TO_ADDENDUM
    assert doc.addendum == [text]
    assert MOVED_TO_ADDENDUM in doc.content


def test_remove_reference_tidies_spacing() -> None:
    result = PrecisionEditor().apply(_bundle(), [_issue("RemoveReference", location={"current_value": "ev_item9"})])
    doc = result.bundle.document("doc_001")
    assert doc.sections[0].content == "Witness saw the suspect at 21:00 near and the dock."


def test_add_media_attachment_requires_existing_evidence() -> None:
    issues = [
        _issue("AddMediaAttachment", new_value="ev_item1"),
        _issue("AddMediaAttachment", new_value="ev_item1", priority="Low"),
        _issue("AddMediaAttachment", problem="photo ev_ghost7 is missing", priority="Low"),
    ]
    result = PrecisionEditor().apply(_bundle(), issues)
    assert [outcome.applied for outcome in result.outcomes] == [True, False, False]
    assert result.bundle.document("doc_001").media_refs == ["ev_item1"]
    assert "already attached" in result.outcomes[1].reason
    assert "does not exist" in result.outcomes[2].reason


def test_generate_missing_document_inserts_placeholder() -> None:
    result = PrecisionEditor().apply(
        _bundle(),
        [_issue("GenerateMissingDocument", doc_id="doc_009", new_text="Lab results pending.")],
    )
    doc = result.bundle.document("doc_009")
    assert doc is not None
    assert doc.placeholder
    assert doc.content == "Lab results pending."
    assert doc.type == "supplementary_report"


def test_issues_without_target_or_unknown_document_are_skipped() -> None:
    issues = [
        _issue("ReplaceText", doc_id="", old_text="a", new_text="b"),
        _issue("ReplaceText", doc_id="skeleton", old_text="a", new_text="b"),
        _issue("ReplaceText", doc_id="doc_404", old_text="a", new_text="b"),
    ]
    result = PrecisionEditor().apply(_bundle(), issues)
    assert result.applied == []
    assert len(result.unapplied) == 3


def test_high_priority_fix_applies_first() -> None:
    issues = [
        _issue("ReplaceText", priority="Low", old_text="22:15", new_text="23:45"),
        _issue("ReplaceText", priority="High", old_text="21:00", new_text="22:15"),
    ]
    result = PrecisionEditor().apply(_bundle(), issues)
    assert [outcome.issue.priority.value for outcome in result.outcomes] == ["High", "Low"]
    assert "23:45" in result.bundle.document("doc_001").content
