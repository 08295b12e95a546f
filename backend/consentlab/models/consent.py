# SPDX-License-Identifier: Apache-2.0
"""Consent versions and per-category choices. Write-once rows."""
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from consentlab.core.timeutil import utcnow


class Consent(SQLModel, table=True):
    __tablename__ = "consents"
    __table_args__ = (
        UniqueConstraint("study_id", "participant_id", "version", name="uq_consent_version"),
    )
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    participant_id: str = Field(index=True)
    version: int
    granted: bool
    effective_at: datetime
    withdrawn_at: datetime | None = None
    receipt_hash: str
    receipt_json: str = "{}"
    created_at: datetime = Field(default_factory=utcnow)


class ConsentChoice(SQLModel, table=True):
    __tablename__ = "consent_choices"
    id: int | None = Field(default=None, primary_key=True)
    consent_id: int = Field(foreign_key="consents.id", index=True)
    category_id: int = Field(foreign_key="data_categories.id", index=True)
    allowed: bool
