# SPDX-License-Identifier: Apache-2.0
"""Append-only audit trail with chained hashes, one chain per study."""
from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session, select

from consentlab.core.exceptions import IntegrityFailure
from consentlab.core.security import canonical_json, sha256_hex
from consentlab.core.timeutil import iso_z, utcnow
from consentlab.models import AuditLog

logger = logging.getLogger("consentlab")


class AuditAction:
    # Study lifecycle
    STUDY_CREATED = "STUDY_CREATED"
    STUDY_CLONED_FROM = "STUDY_CLONED_FROM"
    STUDY_UPDATED = "STUDY_UPDATED"
    JOIN_CODE_REGENERATED = "JOIN_CODE_REGENERATED"

    # Membership
    ENROLLED = "ENROLLED"
    UNENROLLED = "UNENROLLED"

    # Consent versions
    CONSENT_GIVEN = "CONSENT_GIVEN"
    CONSENT_EDITED = "CONSENT_EDITED"
    WITHDRAWN = "WITHDRAWN"
    RECEIPT_DOWNLOADED = "RECEIPT_DOWNLOADED"

    # Uploads
    FILE_UPLOADED = "FILE_UPLOADED"
    FILE_DELETED = "FILE_DELETED"


def compute_entry_hash(prev_hash: str | None, action: str, details_json: str, created_at_iso: str) -> str:
    """entry_hash = SHA-256(prev_hash_or_empty + action + canonical details + created_at ISO)."""
    return sha256_hex((prev_hash or "") + action + details_json + created_at_iso)


def latest_entry(session: Session, study_id: int) -> AuditLog | None:
    return session.exec(
        select(AuditLog).where(AuditLog.study_id == study_id).order_by(AuditLog.seq.desc()).limit(1)
    ).first()


def append_audit(
    session: Session,
    study_id: int,
    actor_role: str,
    actor_id: str | None,
    action: str,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Add the next chain entry to the session. Caller holds study_write_guard and commits."""
    last = latest_entry(session, study_id)
    prev_hash = last.entry_hash if last else None
    created_at = utcnow()
    details_json = canonical_json(details or {})
    entry = AuditLog(
        study_id=study_id,
        seq=(last.seq + 1) if last else 1,
        actor_role=actor_role,
        actor_id=actor_id,
        action=action,
        details=details_json,
        prev_hash=prev_hash,
        entry_hash=compute_entry_hash(prev_hash, action, details_json, iso_z(created_at)),
        created_at=created_at,
    )
    session.add(entry)
    session.flush()
    return entry


def list_audit(session: Session, study_id: int) -> list[AuditLog]:
    return list(session.exec(select(AuditLog).where(AuditLog.study_id == study_id).order_by(AuditLog.seq)))


class ChainReport:
    """Result of walking a study's chain oldest to newest."""

    def __init__(self, study_id: int):
        self.study_id = study_id
        self.entries = 0
        self.head_hash: str | None = None
        self.problems: list[dict[str, Any]] = []

    @property
    def valid(self) -> bool:
        return not self.problems

    def add_problem(self, seq: int, kind: str, expected: Any, actual: Any) -> None:
        self.problems.append({"seq": seq, "kind": kind, "expected": expected, "actual": actual})

    def as_dict(self) -> dict[str, Any]:
        return {
            "study_id": self.study_id,
            "valid": self.valid,
            "entries": self.entries,
            "head_hash": self.head_hash,
            "problems": self.problems,
        }

    def raise_for_failure(self) -> None:
        if not self.valid:
            raise IntegrityFailure(
                f"Audit chain of study {self.study_id} failed verification ({len(self.problems)} problem(s))",
                problems=self.problems,
            )


def verify_entries(study_id: int, entries: list[AuditLog]) -> ChainReport:
    """Check positions, links and hashes. Entries must be ordered by seq."""
    report = ChainReport(study_id)
    prev: AuditLog | None = None
    for expected_seq, entry in enumerate(entries, start=1):
        report.entries += 1
        if entry.seq != expected_seq:
            report.add_problem(entry.seq, "seq_gap", expected_seq, entry.seq)
        expected_prev = prev.entry_hash if prev else None
        if entry.prev_hash != expected_prev:
            report.add_problem(entry.seq, "prev_hash_mismatch", expected_prev, entry.prev_hash)
        recomputed = compute_entry_hash(entry.prev_hash, entry.action, entry.details, iso_z(entry.created_at))
        if recomputed != entry.entry_hash:
            report.add_problem(entry.seq, "entry_hash_mismatch", recomputed, entry.entry_hash)
        prev = entry
    report.head_hash = prev.entry_hash if prev else None
    return report


def verify_chain(session: Session, study_id: int) -> ChainReport:
    """Walk the stored chain; never modifies data."""
    report = verify_entries(study_id, list_audit(session, study_id))
    if not report.valid:
        logger.warning("Audit chain for study %s failed verification: %s", study_id, report.problems)
    return report
