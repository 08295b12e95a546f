# SPDX-License-Identifier: Apache-2.0
"""Upload metadata. File bytes live in external storage."""
from datetime import datetime

from sqlmodel import Field, SQLModel

from consentlab.core.timeutil import utcnow


class Upload(SQLModel, table=True):
    __tablename__ = "uploads"
    id: int | None = Field(default=None, primary_key=True)
    study_id: int = Field(foreign_key="studies.id", index=True)
    participant_id: str = Field(index=True)
    category_id: int = Field(foreign_key="data_categories.id")
    original_name: str = ""
    mime: str = ""
    size_bytes: int = 0
    checksum: str = ""
    storage_path: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None
