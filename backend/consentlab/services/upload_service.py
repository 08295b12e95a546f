# SPDX-License-Identifier: Apache-2.0
"""Consent gate for uploads. Stores metadata only; bytes are kept by the storage layer."""
from __future__ import annotations

import logging

from sqlmodel import Session, select

from consentlab.config import settings
from consentlab.core.exceptions import ForbiddenError, InvalidInputError, NotFoundError
from consentlab.core.security import ROLE_PARTICIPANT
from consentlab.core.timeutil import utcnow
from consentlab.database import commit_or_conflict
from consentlab.models import DataCategory, Study, Upload
from consentlab.schemas import UploadRegister
from consentlab.services.audit_service import AuditAction, append_audit
from consentlab.services.consent_service import choices_for, latest_consent
from consentlab.services.locks import study_write_guard

logger = logging.getLogger("consentlab")


def _category_of(session: Session, study: Study, category_id: int) -> DataCategory | None:
    cat = session.get(DataCategory, category_id)
    if cat is None or cat.study_id != study.id:
        return None
    return cat


def upload_permitted(session: Session, study: Study, participant_id: str, category_id: int) -> bool:
    """Required categories always accept; others need an allow in the latest consent version."""
    cat = _category_of(session, study, category_id)
    if cat is None:
        return False
    if cat.required:
        return True
    latest = latest_consent(session, study.id, participant_id)
    if latest is None:
        return False
    return choices_for(session, latest.id).get(category_id, False)


def register_upload(session: Session, study: Study, participant_id: str, meta: UploadRegister) -> Upload:
    cat = _category_of(session, study, meta.category_id)
    if cat is None:
        raise InvalidInputError("Invalid category.")
    if not upload_permitted(session, study, participant_id, meta.category_id):
        raise ForbiddenError("Upload not permitted for this category without consent.")
    if meta.size_bytes > settings.max_upload_bytes:
        raise InvalidInputError(f"File too large (max {settings.max_upload_size_mb} MB)")
    with study_write_guard(study.id):
        upload = Upload(
            study_id=study.id,
            participant_id=participant_id,
            category_id=cat.id,
            original_name=meta.original_name,
            mime=meta.mime,
            size_bytes=meta.size_bytes,
            checksum=meta.checksum,
            storage_path=meta.storage_path,
        )
        session.add(upload)
        session.flush()
        append_audit(
            session, study.id, ROLE_PARTICIPANT, participant_id, AuditAction.FILE_UPLOADED,
            {"upload_id": upload.id, "category": cat.name, "size": upload.size_bytes, "mime": upload.mime},
        )
        commit_or_conflict(session, f"uploads of study {study.slug}")
    logger.info("Study %s: upload %s registered for participant %s", study.slug, upload.id, participant_id)
    return upload


def delete_upload(session: Session, upload_id: int, participant_id: str) -> Upload:
    """Soft delete by the participant who uploaded it."""
    upload = session.get(Upload, upload_id)
    if upload is None or upload.deleted_at is not None:
        raise NotFoundError("Not found")
    if upload.participant_id != participant_id:
        raise ForbiddenError("Forbidden")
    with study_write_guard(upload.study_id):
        upload.deleted_at = utcnow()
        session.add(upload)
        append_audit(
            session, upload.study_id, ROLE_PARTICIPANT, participant_id, AuditAction.FILE_DELETED,
            {"upload_id": upload.id},
        )
        commit_or_conflict(session, "uploads")
    return upload


def active_uploads(session: Session, study_id: int, participant_id: str) -> list[Upload]:
    return list(
        session.exec(
            select(Upload)
            .where(Upload.study_id == study_id, Upload.participant_id == participant_id, Upload.deleted_at.is_(None))
            .order_by(Upload.created_at.desc(), Upload.id.desc())
        )
    )
