# SPDX-License-Identifier: Apache-2.0
"""Researcher endpoints: list, create, edit, delete, clone, join code, audit trail and verification."""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends
from sqlmodel import Session

from consentlab.core.security import Actor, require_researcher
from consentlab.core.timeutil import iso_z
from consentlab.database import get_session
from consentlab.schemas import StudyCreate, StudyUpdate
from consentlab.services import audit_service, enrollment_service, study_service
from consentlab.services.category_service import ensure_minimum_categories, list_categories

router = APIRouter(tags=["researcher"])


def _owned(session: Session, slug: str, actor: Actor):
    study = study_service.get_study_by_slug(session, slug)
    study_service.require_owner(study, actor.id)
    return study


@router.get("/studies")
def researcher_studies(actor: Actor = Depends(require_researcher), session: Session = Depends(get_session)):
    """Studies owned by the calling researcher, newest first."""
    return [
        study_service.study_view(s, list_categories(session, s.id), include_join_code=True)
        for s in study_service.owned_studies(session, actor.id)
    ]


@router.post("/studies", status_code=201)
def researcher_create_study(
    body: StudyCreate,
    actor: Actor = Depends(require_researcher),
    session: Session = Depends(get_session),
):
    study = study_service.create_study(session, actor.id, body)
    return study_service.study_view(study, list_categories(session, study.id), include_join_code=True)


@router.get("/studies/{slug}/edit")
def researcher_study_edit_form(
    slug: str,
    actor: Actor = Depends(require_researcher),
    session: Session = Depends(get_session),
):
    """Study with its guaranteed category set, ready for an edit round trip."""
    study = _owned(session, slug, actor)
    cats = ensure_minimum_categories(session, study.id)
    return study_service.study_view(study, cats, include_join_code=True)


@router.put("/studies/{slug}")
def researcher_update_study(
    slug: str,
    body: StudyUpdate,
    actor: Actor = Depends(require_researcher),
    session: Session = Depends(get_session),
):
    study = study_service.get_study_by_slug(session, slug)
    study = study_service.update_study(session, study, actor.id, body)
    return study_service.study_view(study, list_categories(session, study.id), include_join_code=True)


@router.delete("/studies/{slug}")
def researcher_delete_study(
    slug: str,
    actor: Actor = Depends(require_researcher),
    session: Session = Depends(get_session),
):
    study = study_service.get_study_by_slug(session, slug)
    study_service.delete_study(session, study, actor.id)
    return {"deleted": slug}


@router.post("/studies/{slug}/join-code/regenerate")
def researcher_regenerate_join_code(
    slug: str,
    actor: Actor = Depends(require_researcher),
    session: Session = Depends(get_session),
):
    study = study_service.get_study_by_slug(session, slug)
    return {"join_code": enrollment_service.regenerate_join_code(session, study, actor.id)}


@router.post("/templates/{slug}/clone", status_code=201)
def researcher_clone_template(
    slug: str,
    actor: Actor = Depends(require_researcher),
    session: Session = Depends(get_session),
):
    study = study_service.clone_study(session, slug, actor.id, actor.email)
    return study_service.study_view(study, list_categories(session, study.id), include_join_code=True)


@router.get("/studies/{slug}/audit")
def researcher_audit_trail(
    slug: str,
    actor: Actor = Depends(require_researcher),
    session: Session = Depends(get_session),
):
    """Full chain; entry_hash = SHA-256(prev_hash || action || details || created_at)."""
    study = _owned(session, slug, actor)
    return [
        {
            "seq": e.seq,
            "actor_role": e.actor_role,
            "actor_id": e.actor_id,
            "action": e.action,
            "details": json.loads(e.details) if e.details else {},
            "prev_hash": e.prev_hash,
            "entry_hash": e.entry_hash,
            "created_at": iso_z(e.created_at),
        }
        for e in audit_service.list_audit(session, study.id)
    ]


@router.get("/studies/{slug}/audit/verify")
def researcher_audit_verify(
    slug: str,
    actor: Actor = Depends(require_researcher),
    session: Session = Depends(get_session),
):
    study = _owned(session, slug, actor)
    return audit_service.verify_chain(session, study.id).as_dict()
