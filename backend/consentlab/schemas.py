# SPDX-License-Identifier: Apache-2.0
"""Pydantic request schemas."""
from typing import Literal

from pydantic import BaseModel, Field as PydanticField

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
StudyStatus = Literal["draft", "public", "invite"]


class CategoryInput(BaseModel):
    name: str = PydanticField("", max_length=120)
    description: str = PydanticField("", max_length=2000)
    required: bool = False
    retention_days: int | None = PydanticField(None, ge=0)


class CategoryEdit(BaseModel):
    id: int
    name: str = PydanticField(..., min_length=1, max_length=120)
    description: str = PydanticField("", max_length=2000)
    required: bool = False
    retention_days: int | None = PydanticField(None, ge=0)


class StudyCreate(BaseModel):
    title: str = PydanticField(..., min_length=1, max_length=200)
    summary: str = PydanticField(..., min_length=1, max_length=2000)
    purpose: str = PydanticField(..., min_length=1, max_length=4000)
    contact_email: str = PydanticField(..., max_length=254, pattern=EMAIL_PATTERN)
    retention_default_days: int | None = PydanticField(None, ge=0)
    status: StudyStatus = "public"
    join_code: str | None = PydanticField(None, max_length=32)
    categories: list[CategoryInput] = []


class StudyUpdate(BaseModel):
    title: str = PydanticField(..., min_length=1, max_length=200)
    summary: str = PydanticField(..., min_length=1, max_length=2000)
    purpose: str = PydanticField(..., min_length=1, max_length=4000)
    contact_email: str = PydanticField(..., max_length=254, pattern=EMAIL_PATTERN)
    retention_default_days: int | None = PydanticField(None, ge=0)
    status: StudyStatus
    join_code: str | None = PydanticField(None, max_length=32)
    categories: list[CategoryEdit] = PydanticField(..., min_length=1)


class JoinCodeSubmit(BaseModel):
    code: str = ""


class ConsentSubmit(BaseModel):
    """Allow/deny per category id. Unknown ids are ignored, missing ones are denied."""

    choices: dict[int, bool] = {}


class UploadRegister(BaseModel):
    category_id: int
    original_name: str = PydanticField(..., min_length=1, max_length=255)
    mime: str = PydanticField(..., min_length=1, max_length=255)
    size_bytes: int = PydanticField(..., ge=0)
    checksum: str = PydanticField(..., pattern=r"^[0-9a-f]{64}$")
    storage_path: str = PydanticField("", max_length=1024)
