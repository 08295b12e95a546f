# SPDX-License-Identifier: Apache-2.0
"""Audit log model. seq is the chain position within a study."""
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from consentlab.core.timeutil import utcnow


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_log"
    __table_args__ = (UniqueConstraint("study_id", "seq", name="uq_audit_chain_position"),)
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    seq: int
    actor_role: str = ""
    actor_id: str | None = None
    action: str = ""
    details: str = "{}"
    prev_hash: str | None = None
    entry_hash: str = ""
    created_at: datetime = Field(default_factory=utcnow)
