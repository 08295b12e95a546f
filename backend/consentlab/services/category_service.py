# SPDX-License-Identifier: Apache-2.0
"""Keeps every study at a stable, non-empty set of consent categories."""
from __future__ import annotations

import logging

from sqlmodel import Session, select

from consentlab.config import settings
from consentlab.core.exceptions import InvalidInputError
from consentlab.models import DataCategory, Study
from consentlab.services.locks import study_write_guard

logger = logging.getLogger("consentlab")

DEFAULT_CATEGORIES = (
    {"name": "Email", "description": "", "required": False, "retention_days": None},
    {"name": "Usage Logs", "description": "", "required": True, "retention_days": None},
    {"name": "Accelerometer", "description": "", "required": True, "retention_days": None},
)


def list_categories(session: Session, study_id: int) -> list[DataCategory]:
    return list(
        session.exec(
            select(DataCategory)
            .where(DataCategory.study_id == study_id)
            .order_by(DataCategory.created_at, DataCategory.id)
        )
    )


def default_category(index: int) -> dict:
    """Default for the category at this position; past the defaults, a numbered placeholder."""
    if index < len(DEFAULT_CATEGORIES):
        return dict(DEFAULT_CATEGORIES[index])
    return {"name": f"Category {index + 1}", "description": "", "required": False, "retention_days": None}


def default_fill(start_index: int, count: int) -> list[dict]:
    """Defaults for positions start_index .. start_index + count - 1."""
    return [default_category(i) for i in range(start_index, start_index + count)]


def ensure_minimum_categories(session: Session, study_id: int, minimum: int | None = None) -> list[DataCategory]:
    """Return the study's categories, first persisting defaults if fewer than the minimum exist."""
    minimum = minimum or settings.min_categories
    cats = list_categories(session, study_id)
    if len(cats) >= minimum:
        return cats
    with study_write_guard(study_id):
        cats = list_categories(session, study_id)
        missing = minimum - len(cats)
        if missing > 0:
            for d in default_fill(len(cats), missing):
                session.add(DataCategory(study_id=study_id, **d))
            session.commit()
            logger.info("Study %s: added %d default categories", study_id, missing)
    return list_categories(session, study_id)


def apply_category_edits(session: Session, study: Study, edits: list) -> list[DataCategory]:
    """Update categories in place by id. One edit per existing category, no more, no less.

    Rows are never recreated, so consent choices keep pointing at the same ids.
    Adds to the session only; the caller commits.
    """
    cats = {c.id: c for c in list_categories(session, study.id)}
    ids = [e.id for e in edits]
    if len(set(ids)) != len(ids):
        raise InvalidInputError("Duplicate category id in edit")
    unknown = [i for i in ids if i not in cats]
    if unknown:
        raise InvalidInputError(f"Category {unknown[0]} does not belong to this study")
    if len(ids) != len(cats):
        raise InvalidInputError(f"Expected {len(cats)} category entries, got {len(ids)}")
    for e in edits:
        cat = cats[e.id]
        cat.name = e.name
        cat.description = e.description
        cat.required = e.required
        cat.retention_days = e.retention_days
        session.add(cat)
    return [cats[i] for i in sorted(cats, key=lambda i: (cats[i].created_at, i))]
