# SPDX-License-Identifier: Apache-2.0
"""Enrollment model: one row per (study, participant)."""
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from consentlab.core.timeutil import utcnow


class Enrollment(SQLModel, table=True):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("study_id", "participant_id", name="uq_enrollment_study_participant"),)
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    participant_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
