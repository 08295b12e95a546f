# SPDX-License-Identifier: Apache-2.0
"""SQLModel table definitions."""
from consentlab.models.audit import AuditLog
from consentlab.models.consent import Consent, ConsentChoice
from consentlab.models.enrollment import Enrollment
from consentlab.models.study import DataCategory, Study
from consentlab.models.upload import Upload

__all__ = [
    "AuditLog",
    "Consent",
    "ConsentChoice",
    "DataCategory",
    "Enrollment",
    "Study",
    "Upload",
]
