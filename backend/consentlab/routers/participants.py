# SPDX-License-Identifier: Apache-2.0
"""Participant endpoints: enrollment, consent versions, history, receipts, uploads."""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Query, Request
from sqlmodel import Session

from consentlab.config import settings
from consentlab.core.exceptions import NotFoundError
from consentlab.core.security import Actor, rate_limit, require_participant
from consentlab.database import get_session
from consentlab.models import Study
from consentlab.schemas import ConsentSubmit, JoinCodeSubmit, UploadRegister
from consentlab.services import consent_service, enrollment_service, study_service, upload_service
from consentlab.services.category_service import ensure_minimum_categories, list_categories

router = APIRouter(tags=["participant"])


def _visible(session: Session, slug: str) -> Study:
    """Participants see public and invite studies; drafts do not exist for them."""
    study = study_service.get_study_by_slug(session, slug)
    if study.status == "draft":
        raise NotFoundError("Study not found")
    return study


def _receipt_payload(consent) -> dict:
    return {
        "version": consent.version,
        "receipt_hash": consent.receipt_hash,
        "receipt": json.loads(consent.receipt_json),
        "verified": consent_service.verify_receipt(consent),
    }


@router.get("/studies")
def participant_studies(actor: Actor = Depends(require_participant), session: Session = Depends(get_session)):
    """Non-draft studies the participant is enrolled in."""
    return [
        study_service.study_view(s, list_categories(session, s.id))
        for s in enrollment_service.enrolled_studies(session, actor.id)
    ]


@router.post("/join")
@rate_limit(settings.join_rate_limit)
def participant_join_by_code(
    request: Request,
    body: JoinCodeSubmit,
    actor: Actor = Depends(require_participant),
    session: Session = Depends(get_session),
):
    study, _ = enrollment_service.join_by_code(session, actor.id, body.code)
    return {"slug": study.slug, "enrolled": True}


@router.get("/studies/{slug}")
def participant_study(slug: str, actor: Actor = Depends(require_participant), session: Session = Depends(get_session)):
    """Study page data: categories, enrollment flag, current consent."""
    study = _visible(session, slug)
    cats = ensure_minimum_categories(session, study.id)
    latest = consent_service.latest_consent(session, study.id, actor.id)
    out = study_service.study_view(study, cats)
    out["enrolled"] = enrollment_service.is_enrolled(session, study.id, actor.id)
    out["latest_consent"] = consent_service.consent_view(session, latest) if latest else None
    return out


@router.post("/studies/{slug}/enroll")
def participant_enroll(
    slug: str,
    body: JoinCodeSubmit = JoinCodeSubmit(),
    actor: Actor = Depends(require_participant),
    session: Session = Depends(get_session),
):
    study = study_service.get_study_by_slug(session, slug)
    enrollment_service.join(session, study, actor.id, body.code)
    return {"slug": study.slug, "enrolled": True}


@router.post("/studies/{slug}/unenroll")
def participant_unenroll(slug: str, actor: Actor = Depends(require_participant), session: Session = Depends(get_session)):
    study = study_service.get_study_by_slug(session, slug)
    enrollment_service.unenroll(session, study, actor.id)
    return {"slug": study.slug, "enrolled": False}


@router.post("/studies/{slug}/consent")
def participant_consent(
    slug: str,
    body: ConsentSubmit,
    actor: Actor = Depends(require_participant),
    session: Session = Depends(get_session),
):
    study = _visible(session, slug)
    consent = consent_service.record_decision(session, study, actor.id, body.choices)
    return consent_service.consent_view(session, consent)


@router.post("/studies/{slug}/withdraw")
def participant_withdraw(slug: str, actor: Actor = Depends(require_participant), session: Session = Depends(get_session)):
    study = _visible(session, slug)
    consent = consent_service.withdraw(session, study, actor.id)
    return consent_service.consent_view(session, consent)


@router.get("/studies/{slug}/history")
def participant_history(slug: str, actor: Actor = Depends(require_participant), session: Session = Depends(get_session)):
    """All saved versions, newest first."""
    study = study_service.get_study_by_slug(session, slug)
    return [
        consent_service.consent_view(session, c)
        for c in consent_service.consent_history(session, study.id, actor.id)
    ]


@router.get("/studies/{slug}/history/diff")
def participant_history_diff(
    slug: str,
    v1: int = Query(..., ge=1),
    v2: int = Query(..., ge=1),
    actor: Actor = Depends(require_participant),
    session: Session = Depends(get_session),
):
    study = study_service.get_study_by_slug(session, slug)
    return {"v1": v1, "v2": v2, "rows": consent_service.diff_versions(session, study, actor.id, v1, v2)}


@router.get("/studies/{slug}/receipt/latest")
def participant_receipt_latest(
    slug: str,
    actor: Actor = Depends(require_participant),
    session: Session = Depends(get_session),
):
    study = study_service.get_study_by_slug(session, slug)
    return _receipt_payload(consent_service.receipt_for_download(session, study, actor.id))


@router.get("/studies/{slug}/receipt/{version}")
def participant_receipt_version(
    slug: str,
    version: int,
    actor: Actor = Depends(require_participant),
    session: Session = Depends(get_session),
):
    study = study_service.get_study_by_slug(session, slug)
    return _receipt_payload(consent_service.receipt_for_download(session, study, actor.id, version))


@router.post("/studies/{slug}/uploads", status_code=201)
def participant_register_upload(
    slug: str,
    body: UploadRegister,
    actor: Actor = Depends(require_participant),
    session: Session = Depends(get_session),
):
    """Called by the storage layer once bytes are stored; refuses categories without consent."""
    study = _visible(session, slug)
    upload = upload_service.register_upload(session, study, actor.id, body)
    return {"id": upload.id, "category_id": upload.category_id, "checksum": upload.checksum}


@router.delete("/uploads/{upload_id}")
def participant_delete_upload(
    upload_id: int,
    actor: Actor = Depends(require_participant),
    session: Session = Depends(get_session),
):
    upload = upload_service.delete_upload(session, upload_id, actor.id)
    return {"id": upload.id, "deleted": True}
