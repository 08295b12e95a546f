# SPDX-License-Identifier: Apache-2.0
"""Study and DataCategory models."""
from datetime import datetime

from sqlmodel import Field, SQLModel

from consentlab.core.timeutil import utcnow


class Study(SQLModel, table=True):
    __tablename__ = "studies"
    id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    title: str
    summary: str = ""
    purpose: str = ""
    contact_email: str = ""
    status: str = "draft"
    join_code: str | None = Field(default=None, index=True)
    retention_default_days: int | None = None
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DataCategory(SQLModel, table=True):
    __tablename__ = "data_categories"
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    name: str
    description: str = ""
    required: bool = False
    retention_days: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
