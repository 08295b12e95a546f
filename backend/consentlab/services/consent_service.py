# SPDX-License-Identifier: Apache-2.0
"""Consent versioning: immutable, gapless versions with self-verifying receipts."""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, select

from consentlab.config import RECEIPT_HASH_PREFIX, settings
from consentlab.core.exceptions import NotFoundError
from consentlab.core.security import ROLE_PARTICIPANT, canonical_json, sha256_hex
from consentlab.core.timeutil import iso_z, utcnow
from consentlab.database import commit_or_conflict
from consentlab.models import Consent, ConsentChoice, DataCategory, Study
from consentlab.services.audit_service import AuditAction, append_audit
from consentlab.services.category_service import ensure_minimum_categories
from consentlab.services.locks import study_write_guard

logger = logging.getLogger("consentlab")


def effective_decisions(
    categories: list[DataCategory],
    choices: dict[int, bool],
    is_withdrawal: bool,
) -> list[tuple[DataCategory, bool]]:
    """One decision per study category. Required forces allow; withdrawal forces deny.

    Choices for ids outside the study are ignored; absent categories are denied.
    """
    out = []
    for cat in categories:
        if is_withdrawal:
            allowed = False
        elif cat.required:
            allowed = True
        else:
            allowed = bool(choices.get(cat.id, False))
        out.append((cat, allowed))
    return out


def build_receipt_body(
    study: Study,
    participant_id: str,
    decisions: list[tuple[DataCategory, bool]],
    effective_at: str,
    is_withdrawal: bool,
) -> dict[str, Any]:
    return {
        "receipt_version": settings.receipt_schema_version,
        "study": {
            "slug": study.slug,
            "title": study.title,
            "version": study.version,
            "contact": study.contact_email,
        },
        "participant": {"pseudonymous_id": participant_id},
        "decisions": [{"category": cat.name, "allowed": allowed} for cat, allowed in decisions],
        "retention": {"default_days": study.retention_default_days},
        "effective_at": effective_at,
        "withdrawal": effective_at if is_withdrawal else None,
    }


def compute_receipt_hash(body: dict[str, Any]) -> str:
    return RECEIPT_HASH_PREFIX + sha256_hex(canonical_json(body))


def verify_receipt(consent: Consent) -> bool:
    """Recompute the hash over the stored receipt minus its hash field."""
    try:
        stored = json.loads(consent.receipt_json or "{}")
    except (json.JSONDecodeError, TypeError):
        return False
    claimed = stored.pop("receipt_hash", None)
    recomputed = compute_receipt_hash(stored)
    return claimed == consent.receipt_hash == recomputed


def next_version(session: Session, study_id: int, participant_id: str) -> int:
    current = session.exec(
        select(func.max(Consent.version)).where(
            Consent.study_id == study_id, Consent.participant_id == participant_id
        )
    ).one()
    return (current or 0) + 1


def record_decision(
    session: Session,
    study: Study,
    participant_id: str,
    choices: dict[int, bool] | None = None,
    is_withdrawal: bool = False,
) -> Consent:
    """Persist the next consent version, its choices and one audit entry atomically."""
    with study_write_guard(study.id):
        study = session.get(Study, study.id, populate_existing=True)
        if study is None:
            raise NotFoundError("Study not found")
        categories = ensure_minimum_categories(session, study.id)
        version = next_version(session, study.id, participant_id)
        decisions = effective_decisions(categories, choices or {}, is_withdrawal)
        granted = any(allowed for _, allowed in decisions)
        now = utcnow()
        body = build_receipt_body(study, participant_id, decisions, iso_z(now), is_withdrawal)
        receipt_hash = compute_receipt_hash(body)
        consent = Consent(
            study_id=study.id,
            participant_id=participant_id,
            version=version,
            granted=granted,
            effective_at=now,
            withdrawn_at=now if is_withdrawal else None,
            receipt_hash=receipt_hash,
            receipt_json=canonical_json({**body, "receipt_hash": receipt_hash}),
        )
        try:
            session.add(consent)
            session.flush()
            for cat, allowed in decisions:
                session.add(ConsentChoice(consent_id=consent.id, category_id=cat.id, allowed=allowed))
            if is_withdrawal:
                action, details = AuditAction.WITHDRAWN, {"version": version}
            else:
                action = AuditAction.CONSENT_GIVEN if version == 1 else AuditAction.CONSENT_EDITED
                details = {
                    "version": version,
                    "granted": granted,
                    "decisions": [{"category_id": cat.id, "allowed": allowed} for cat, allowed in decisions],
                }
            append_audit(session, study.id, ROLE_PARTICIPANT, participant_id, action, details)
        except Exception:
            session.rollback()
            raise
        commit_or_conflict(session, f"consent of study {study.slug}")
    logger.info("Study %s participant %s: consent v%d (%s)", study.slug, participant_id, version, action)
    return consent


def withdraw(session: Session, study: Study, participant_id: str) -> Consent:
    return record_decision(session, study, participant_id, is_withdrawal=True)


def latest_consent(session: Session, study_id: int, participant_id: str) -> Consent | None:
    return session.exec(
        select(Consent)
        .where(Consent.study_id == study_id, Consent.participant_id == participant_id)
        .order_by(Consent.version.desc())
        .limit(1)
    ).first()


def consent_history(session: Session, study_id: int, participant_id: str) -> list[Consent]:
    """All versions, newest first."""
    return list(
        session.exec(
            select(Consent)
            .where(Consent.study_id == study_id, Consent.participant_id == participant_id)
            .order_by(Consent.version.desc())
        )
    )


def get_consent_version(session: Session, study_id: int, participant_id: str, version: int) -> Consent:
    consent = session.exec(
        select(Consent).where(
            Consent.study_id == study_id,
            Consent.participant_id == participant_id,
            Consent.version == version,
        )
    ).first()
    if consent is None:
        raise NotFoundError(f"Consent version {version} not found")
    return consent


def choices_for(session: Session, consent_id: int) -> dict[int, bool]:
    rows = session.exec(select(ConsentChoice).where(ConsentChoice.consent_id == consent_id))
    return {r.category_id: r.allowed for r in rows}


def diff_versions(session: Session, study: Study, participant_id: str, v1: int, v2: int) -> list[dict[str, Any]]:
    """Per-category comparison of two versions; None where a version has no choice for it."""
    c1 = get_consent_version(session, study.id, participant_id, v1)
    c2 = get_consent_version(session, study.id, participant_id, v2)
    a_map, b_map = choices_for(session, c1.id), choices_for(session, c2.id)

    def label(m: dict[int, bool], cat_id: int) -> str | None:
        if cat_id not in m:
            return None
        return "allowed" if m[cat_id] else "denied"

    rows = []
    for cat in ensure_minimum_categories(session, study.id):
        a, b = label(a_map, cat.id), label(b_map, cat.id)
        rows.append({"category_id": cat.id, "name": cat.name, "a": a, "b": b, "changed": a != b})
    return rows


def receipt_for_download(session: Session, study: Study, participant_id: str, version: int | None = None) -> Consent:
    """Fetch the latest (or given) version and log the download in the audit chain."""
    if version is None:
        consent = latest_consent(session, study.id, participant_id)
        if consent is None:
            raise NotFoundError("No receipt available. Save choices first.")
    else:
        consent = get_consent_version(session, study.id, participant_id, version)
    with study_write_guard(study.id):
        append_audit(
            session, study.id, ROLE_PARTICIPANT, participant_id,
            AuditAction.RECEIPT_DOWNLOADED, {"version": consent.version, "format": "json"},
        )
        commit_or_conflict(session, f"audit of study {study.slug}")
    return consent


def consent_view(session: Session, consent: Consent) -> dict[str, Any]:
    return {
        "version": consent.version,
        "granted": consent.granted,
        "effective_at": iso_z(consent.effective_at),
        "withdrawn_at": iso_z(consent.withdrawn_at) if consent.withdrawn_at else None,
        "receipt_hash": consent.receipt_hash,
        "choices": [{"category_id": k, "allowed": v} for k, v in sorted(choices_for(session, consent.id).items())],
    }
