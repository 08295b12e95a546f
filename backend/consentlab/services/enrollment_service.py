# SPDX-License-Identifier: Apache-2.0
"""Enrollment gate: idempotent membership and join-code admission for invite studies."""
from __future__ import annotations

import logging
import re
import secrets
import string

from sqlmodel import Session, select

from consentlab.config import JOIN_CODE_MAX_LENGTH, JOIN_CODE_MIN_LENGTH, settings
from consentlab.core.exceptions import ForbiddenError, InvalidInputError, InvalidJoinCodeError, NotFoundError
from consentlab.core.security import ROLE_PARTICIPANT, ROLE_RESEARCHER
from consentlab.database import commit_or_conflict
from consentlab.models import Enrollment, Study
from consentlab.services.audit_service import AuditAction, append_audit
from consentlab.services.locks import study_write_guard

logger = logging.getLogger("consentlab")

JOIN_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_join_code(length: int | None = None) -> str:
    """Random uppercase alphanumeric token."""
    length = length or settings.join_code_length
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def normalize_code(raw: str | None) -> str:
    """Uppercase and drop everything that is not A-Z or 0-9."""
    return re.sub(r"[^A-Z0-9]", "", (raw or "").upper())


def clean_supplied_code(raw: str | None) -> str | None:
    """Researcher-chosen code, trimmed and upper-cased. Blank means none.

    Only 4..16 letters or digits are accepted, so join_by_code can always find it.
    """
    code = (raw or "").strip().upper()
    if not code:
        return None
    if not re.fullmatch(r"[A-Z0-9]+", code) or not JOIN_CODE_MIN_LENGTH <= len(code) <= JOIN_CODE_MAX_LENGTH:
        raise InvalidInputError(
            f"Join code must be {JOIN_CODE_MIN_LENGTH} to {JOIN_CODE_MAX_LENGTH} letters or digits."
        )
    return code


def admission_check(study: Study, supplied_code: str | None) -> None:
    """Raise unless the participant may join. No state is touched."""
    if study.status == "draft":
        raise NotFoundError("Study not found")
    configured = (study.join_code or "").strip().upper()
    if study.status == "invite" and configured:
        if (supplied_code or "").strip().upper() != configured:
            raise InvalidJoinCodeError("Invalid join code.")


def get_enrollment(session: Session, study_id: int, participant_id: str) -> Enrollment | None:
    return session.exec(
        select(Enrollment).where(Enrollment.study_id == study_id, Enrollment.participant_id == participant_id)
    ).first()


def is_enrolled(session: Session, study_id: int, participant_id: str) -> bool:
    return get_enrollment(session, study_id, participant_id) is not None


def join(
    session: Session,
    study: Study,
    participant_id: str,
    supplied_code: str | None = None,
    via: str = "study_page",
) -> Enrollment:
    """Upsert the enrollment after the admission check. Joining twice is a no-op success."""
    admission_check(study, supplied_code)
    with study_write_guard(study.id):
        enrollment = get_enrollment(session, study.id, participant_id)
        if enrollment is None:
            enrollment = Enrollment(study_id=study.id, participant_id=participant_id)
            session.add(enrollment)
        details = {"via": via}
        if via == "join_code":
            details["code"] = normalize_code(supplied_code)
        append_audit(session, study.id, ROLE_PARTICIPANT, participant_id, AuditAction.ENROLLED, details)
        commit_or_conflict(session, f"enrollment in study {study.slug}")
    logger.info("Participant %s enrolled in study %s via %s", participant_id, study.slug, via)
    return enrollment


def join_by_code(session: Session, participant_id: str, raw_code: str | None) -> tuple[Study, Enrollment]:
    """Find the non-draft study carrying this code and join it."""
    code = normalize_code(raw_code)
    if not JOIN_CODE_MIN_LENGTH <= len(code) <= JOIN_CODE_MAX_LENGTH:
        raise InvalidInputError("Invalid join code format.")
    study = session.exec(
        select(Study).where(Study.join_code == code, Study.status.in_(("invite", "public")))
    ).first()
    if study is None:
        raise NotFoundError("No study found for that join code.")
    return study, join(session, study, participant_id, code, via="join_code")


def unenroll(session: Session, study: Study, participant_id: str) -> None:
    """Unconditional. Consent history is kept."""
    with study_write_guard(study.id):
        enrollment = get_enrollment(session, study.id, participant_id)
        if enrollment is not None:
            session.delete(enrollment)
        append_audit(
            session, study.id, ROLE_PARTICIPANT, participant_id, AuditAction.UNENROLLED, {"via": "study_page"}
        )
        commit_or_conflict(session, f"enrollment in study {study.slug}")
    logger.info("Participant %s unenrolled from study %s", participant_id, study.slug)


def enrolled_studies(session: Session, participant_id: str) -> list[Study]:
    return list(
        session.exec(
            select(Study)
            .join(Enrollment, Enrollment.study_id == Study.id)
            .where(Enrollment.participant_id == participant_id, Study.status != "draft")
            .order_by(Study.created_at.desc(), Study.id.desc())
        )
    )


def regenerate_join_code(session: Session, study: Study, actor_id: str) -> str:
    """Replace the code at once; the old one stops admitting immediately."""
    if study.owner_id != actor_id:
        raise ForbiddenError("Forbidden")
    if study.status != "invite":
        raise InvalidInputError("Join code applies only to invite studies.")
    with study_write_guard(study.id):
        previous = study.join_code
        new_code = generate_join_code()
        while new_code == previous:
            new_code = generate_join_code()
        study.join_code = new_code
        session.add(study)
        append_audit(session, study.id, ROLE_RESEARCHER, actor_id, AuditAction.JOIN_CODE_REGENERATED, {})
        commit_or_conflict(session, f"study {study.slug}")
    logger.info("Study %s: join code regenerated", study.slug)
    return new_code
