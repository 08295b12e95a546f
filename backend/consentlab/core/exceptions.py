# SPDX-License-Identifier: Apache-2.0
"""Custom exception classes. status_code is what the API handler returns."""
from __future__ import annotations


class ConsentLabError(Exception):
    """Base exception for consentlab."""

    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or ""


class NotFoundError(ConsentLabError):
    """Resource not found."""

    status_code = 404


class ForbiddenError(ConsentLabError):
    """Actor lacks ownership or role for the action."""

    status_code = 403


class InvalidInputError(ConsentLabError):
    """Input validation failed."""

    status_code = 400


class ConflictError(ConsentLabError):
    """Write conflicts with existing state."""

    status_code = 409


class InvalidJoinCodeError(ConflictError):
    """Invalid join code."""


class IntegrityFailure(ConsentLabError):
    """Audit chain or receipt verification mismatch."""

    status_code = 500

    def __init__(self, message: str = "", problems: list | None = None):
        super().__init__(message)
        self.problems = problems or []
