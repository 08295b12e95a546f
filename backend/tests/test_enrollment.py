# SPDX-License-Identifier: Apache-2.0
"""Enrollment gate: idempotent joins, invite codes, regeneration."""
import pytest

from consentlab.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidJoinCodeError,
    NotFoundError,
)
from consentlab.models import Consent, Enrollment
from consentlab.services.audit_service import list_audit
from consentlab.services.consent_service import consent_history, record_decision
from consentlab.services.enrollment_service import (
    JOIN_CODE_ALPHABET,
    enrolled_studies,
    generate_join_code,
    is_enrolled,
    join,
    join_by_code,
    normalize_code,
    regenerate_join_code,
    unenroll,
)
from sqlmodel import select


def _enrollments(session, study):
    return session.exec(select(Enrollment).where(Enrollment.study_id == study.id)).all()


def test_generate_join_code_shape():
    code = generate_join_code()
    assert len(code) == 8
    assert all(c in JOIN_CODE_ALPHABET for c in code)
    assert len(generate_join_code(12)) == 12


def test_normalize_code():
    assert normalize_code(" ab-cd 12 ") == "ABCD12"
    assert normalize_code(None) == ""


def test_join_public_is_idempotent(session, make_study):
    study = make_study()
    join(session, study, "p1")
    join(session, study, "p1")
    assert len(_enrollments(session, study)) == 1
    assert is_enrolled(session, study.id, "p1")


def test_invite_requires_matching_code(session, make_study):
    study = make_study(status="invite", join_code="SECRET42")
    assert study.join_code == "SECRET42"
    audit_before = len(list_audit(session, study.id))
    with pytest.raises(InvalidJoinCodeError) as exc:
        join(session, study, "p1", "WRONGCODE")
    assert isinstance(exc.value, ConflictError)
    assert _enrollments(session, study) == []
    assert session.exec(select(Consent)).all() == []
    assert len(list_audit(session, study.id)) == audit_before
    with pytest.raises(InvalidJoinCodeError):
        join(session, study, "p1")


def test_invite_code_trimmed_and_case_folded(session, make_study):
    study = make_study(status="invite", join_code="SECRET42")
    join(session, study, "p1", "  secret42 ")
    join(session, study, "p1", "SECRET42")
    assert len(_enrollments(session, study)) == 1


def test_invite_without_code_admits(session, make_study):
    study = make_study(status="invite")
    study.join_code = None
    session.add(study)
    session.commit()
    join(session, study, "p1")
    assert is_enrolled(session, study.id, "p1")


def test_draft_not_joinable(session, make_study):
    study = make_study(status="draft")
    with pytest.raises(NotFoundError):
        join(session, study, "p1")
    assert _enrollments(session, study) == []


def test_regenerate_invalidates_previous_code(session, make_study):
    study = make_study(status="invite")
    original = study.join_code
    first = regenerate_join_code(session, study, "researcher-1")
    second = regenerate_join_code(session, study, "researcher-1")
    assert len({original, first, second}) == 3
    with pytest.raises(InvalidJoinCodeError):
        join(session, study, "p1", first)
    join(session, study, "p1", second)
    assert is_enrolled(session, study.id, "p1")
    assert [e.action for e in list_audit(session, study.id)].count("JOIN_CODE_REGENERATED") == 2


def test_regenerate_owner_and_invite_only(session, make_study):
    invite = make_study(status="invite")
    public = make_study(title="Open")
    with pytest.raises(ForbiddenError):
        regenerate_join_code(session, invite, "someone-else")
    with pytest.raises(InvalidInputError):
        regenerate_join_code(session, public, "researcher-1")


def test_join_by_code(session, make_study):
    study = make_study(status="invite", join_code="ABCD2345")
    found, enrollment = join_by_code(session, "p1", "abcd-2345")
    assert found.id == study.id
    assert enrollment.participant_id == "p1"
    assert list_audit(session, study.id)[-1].details == '{"code":"ABCD2345","via":"join_code"}'


def test_join_by_code_rejects_bad_format_and_unknown(session, make_study):
    make_study(status="invite", join_code="ABCD2345")
    with pytest.raises(InvalidInputError):
        join_by_code(session, "p1", "ab")
    with pytest.raises(InvalidInputError):
        join_by_code(session, "p1", "A" * 17)
    with pytest.raises(NotFoundError):
        join_by_code(session, "p1", "ZZZZ9999")


def test_join_by_code_ignores_drafts(session, make_study):
    study = make_study(status="invite", join_code="DRAFT123")
    study.status = "draft"
    session.add(study)
    session.commit()
    with pytest.raises(NotFoundError):
        join_by_code(session, "p1", "DRAFT123")


def test_unenroll_keeps_consent_history(session, make_study):
    study = make_study()
    join(session, study, "p1")
    record_decision(session, study, "p1", {})
    unenroll(session, study, "p1")
    assert not is_enrolled(session, study.id, "p1")
    assert len(consent_history(session, study.id, "p1")) == 1
    unenroll(session, study, "p1")
    assert list_audit(session, study.id)[-1].action == "UNENROLLED"


def test_unenroll_allowed_on_draft(session, make_study):
    study = make_study()
    join(session, study, "p1")
    study.status = "draft"
    session.add(study)
    session.commit()
    unenroll(session, study, "p1")
    assert not is_enrolled(session, study.id, "p1")


def test_enrolled_studies_hides_drafts(session, make_study):
    a = make_study(title="A")
    b = make_study(title="B")
    join(session, a, "p1")
    join(session, b, "p1")
    b.status = "draft"
    session.add(b)
    session.commit()
    assert [s.slug for s in enrolled_studies(session, "p1")] == [a.slug]


def test_researcher_code_joins_through_both_paths(session, make_study):
    study = make_study(status="invite", join_code=" ab12cd ")
    assert study.join_code == "AB12CD"
    join(session, study, "p1", "ab12cd")
    found, _ = join_by_code(session, "p2", "AB12CD")
    assert found.id == study.id
    assert {e.participant_id for e in _enrollments(session, study)} == {"p1", "p2"}


def test_researcher_code_outside_format_refused(session, make_study):
    with pytest.raises(InvalidInputError):
        make_study(status="invite", join_code="AB-12")
    with pytest.raises(InvalidInputError):
        make_study(status="invite", join_code="A" * 17)
    with pytest.raises(InvalidInputError):
        make_study(status="invite", join_code="ABC")
    assert make_study(status="public", join_code="AB-12").join_code is None
