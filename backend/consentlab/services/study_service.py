# SPDX-License-Identifier: Apache-2.0
"""Study lifecycle: create, edit, clone, delete. Every write lands in the study's audit chain."""
from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from consentlab.core.exceptions import ConflictError, ForbiddenError, NotFoundError
from consentlab.core.security import ROLE_RESEARCHER, sanitize_text
from consentlab.core.timeutil import iso_z, utcnow
from consentlab.database import commit_or_conflict
from consentlab.models import AuditLog, Consent, ConsentChoice, DataCategory, Enrollment, Study, Upload
from consentlab.schemas import StudyCreate, StudyUpdate
from consentlab.services.audit_service import AuditAction, append_audit
from consentlab.services.category_service import (
    apply_category_edits,
    default_category,
    ensure_minimum_categories,
)
from consentlab.services.enrollment_service import clean_supplied_code, generate_join_code
from consentlab.services.locks import forget_study, study_write_guard

logger = logging.getLogger("consentlab")

SLUG_MAX_LENGTH = 60
SLUG_INSERT_ATTEMPTS = 5


def slugify(text: str) -> str:
    """URL-safe lowercase slug; 'study' when nothing usable remains."""
    ascii_text = unicodedata.normalize("NFKD", text or "").encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_text.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-") or "study"


def unique_slug(session: Session, base: str) -> str:
    """slug, slug-1, slug-2, ... first one not taken."""
    root = slugify(base)
    candidate, n = root, 1
    while session.exec(select(Study.id).where(Study.slug == candidate)).first() is not None:
        candidate = f"{root}-{n}"
        n += 1
    return candidate


def get_study_by_slug(session: Session, slug: str) -> Study:
    study = session.exec(select(Study).where(Study.slug == slug)).first()
    if study is None:
        raise NotFoundError("Study not found")
    return study


def require_owner(study: Study, actor_id: str) -> None:
    if study.owner_id != actor_id:
        raise ForbiddenError("Forbidden")


def owned_studies(session: Session, owner_id: str) -> list[Study]:
    return list(
        session.exec(
            select(Study).where(Study.owner_id == owner_id).order_by(Study.created_at.desc(), Study.id.desc())
        )
    )


def _insert_with_unique_slug(session: Session, base: str, **fields: Any) -> Study:
    """Insert a study, retrying with the next suffix if a concurrent insert took the slug."""
    for _ in range(SLUG_INSERT_ATTEMPTS):
        study = Study(slug=unique_slug(session, base), **fields)
        session.add(study)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            continue
        return study
    raise ConflictError("A study with a similar slug/title already exists.")


def _initial_join_code(status: str, supplied: str | None) -> str | None:
    if status != "invite":
        return None
    return clean_supplied_code(supplied) or generate_join_code()


def create_study(session: Session, owner_id: str, data: StudyCreate) -> Study:
    """Create the study with its categories; blank category names fall back to the defaults."""
    study = _insert_with_unique_slug(
        session,
        data.title,
        owner_id=owner_id,
        title=sanitize_text(data.title, 200),
        summary=sanitize_text(data.summary),
        purpose=sanitize_text(data.purpose, 4000),
        contact_email=data.contact_email,
        retention_default_days=data.retention_default_days,
        status=data.status,
        join_code=_initial_join_code(data.status, data.join_code),
    )
    for i, c in enumerate(data.categories):
        session.add(
            DataCategory(
                study_id=study.id,
                name=sanitize_text(c.name, 120) or default_category(i)["name"],
                description=sanitize_text(c.description),
                required=c.required,
                retention_days=c.retention_days,
            )
        )
    with study_write_guard(study.id):
        append_audit(session, study.id, ROLE_RESEARCHER, owner_id, AuditAction.STUDY_CREATED, {"status": study.status})
        commit_or_conflict(session, f"study {study.slug}")
    ensure_minimum_categories(session, study.id)
    logger.info("Study %s created by %s (%s)", study.slug, owner_id, study.status)
    return study


def update_study(session: Session, study: Study, actor_id: str, data: StudyUpdate) -> Study:
    """Edit fields and categories in one transaction. The slug never changes."""
    require_owner(study, actor_id)
    ensure_minimum_categories(session, study.id)
    with study_write_guard(study.id):
        try:
            apply_category_edits(session, study, data.categories)
            study.title = sanitize_text(data.title, 200)
            study.summary = sanitize_text(data.summary)
            study.purpose = sanitize_text(data.purpose, 4000)
            study.contact_email = data.contact_email
            study.retention_default_days = data.retention_default_days
            study.status = data.status
            if data.status == "invite":
                study.join_code = clean_supplied_code(data.join_code) or study.join_code or generate_join_code()
            else:
                study.join_code = None
            study.version += 1
            study.updated_at = utcnow()
            session.add(study)
            append_audit(
                session, study.id, ROLE_RESEARCHER, actor_id, AuditAction.STUDY_UPDATED,
                {"status": study.status, "version": study.version, "join_code_set": study.join_code is not None},
            )
        except Exception:
            session.rollback()
            raise
        commit_or_conflict(session, f"study {study.slug}")
    logger.info("Study %s updated to version %d", study.slug, study.version)
    return study


def clone_study(session: Session, source_slug: str, owner_id: str, contact_email: str | None = None) -> Study:
    """Copy another researcher's public or invite study into a new draft."""
    src = session.exec(select(Study).where(Study.slug == source_slug)).first()
    if src is None or src.owner_id == owner_id:
        raise NotFoundError("Template not found.")
    if src.status not in ("public", "invite"):
        raise ForbiddenError("This study is not available to clone.")
    src_cats = ensure_minimum_categories(session, src.id)
    study = _insert_with_unique_slug(
        session,
        f"{src.slug}-copy",
        owner_id=owner_id,
        title=f"{src.title} (copy)"[:200],
        summary=src.summary,
        purpose=src.purpose,
        contact_email=contact_email or src.contact_email,
        retention_default_days=src.retention_default_days,
        status="draft",
        join_code=None,
    )
    for c in src_cats:
        session.add(
            DataCategory(
                study_id=study.id,
                name=c.name,
                description=c.description,
                required=c.required,
                retention_days=c.retention_days,
            )
        )
    with study_write_guard(study.id):
        append_audit(
            session, study.id, ROLE_RESEARCHER, owner_id, AuditAction.STUDY_CLONED_FROM,
            {"from_slug": src.slug, "from_owner": src.owner_id},
        )
        commit_or_conflict(session, f"study {study.slug}")
    ensure_minimum_categories(session, study.id)
    logger.info("Study %s cloned from %s by %s", study.slug, src.slug, owner_id)
    return study


def delete_study(session: Session, study: Study, actor_id: str) -> None:
    """Remove the study and every dependent row in a single transaction."""
    require_owner(study, actor_id)
    study_id, slug = study.id, study.slug
    with study_write_guard(study_id):
        consent_ids = select(Consent.id).where(Consent.study_id == study_id)
        try:
            session.execute(delete(Upload).where(Upload.study_id == study_id))
            session.execute(delete(ConsentChoice).where(ConsentChoice.consent_id.in_(consent_ids)))
            session.execute(delete(Consent).where(Consent.study_id == study_id))
            session.execute(delete(Enrollment).where(Enrollment.study_id == study_id))
            session.execute(delete(AuditLog).where(AuditLog.study_id == study_id))
            session.execute(delete(DataCategory).where(DataCategory.study_id == study_id))
            session.execute(delete(Study).where(Study.id == study_id))
            session.commit()
        except Exception:
            session.rollback()
            raise
    forget_study(study_id)
    logger.info("Study %s deleted by %s", slug, actor_id)


def category_view(cat: DataCategory) -> dict[str, Any]:
    return {
        "id": cat.id,
        "name": cat.name,
        "description": cat.description,
        "required": cat.required,
        "retention_days": cat.retention_days,
    }


def study_view(study: Study, categories: list[DataCategory], include_join_code: bool = False) -> dict[str, Any]:
    out = {
        "id": study.id,
        "slug": study.slug,
        "title": study.title,
        "summary": study.summary,
        "purpose": study.purpose,
        "contact_email": study.contact_email,
        "status": study.status,
        "retention_default_days": study.retention_default_days,
        "version": study.version,
        "owner_id": study.owner_id,
        "created_at": iso_z(study.created_at),
        "updated_at": iso_z(study.updated_at),
        "categories": [category_view(c) for c in categories],
    }
    if include_join_code:
        out["join_code"] = study.join_code
    return out
