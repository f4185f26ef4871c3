"""Error taxonomy shared by the engine, services, and HTTP layer."""
from __future__ import annotations

from typing import Any


class CompassError(Exception):
    """Base error carrying a machine-readable ``code``."""

    def __init__(self, code: str, message: str | None = None):
        super().__init__(message or code)
        self.code = code


class NotFound(CompassError):
    """Entity absent or not visible to the tenant."""


class ValidationError(CompassError):
    """Rejected input: self_link, cycle_detected, invalid_role, etc."""

    def __init__(self, code: str, message: str | None = None, issues: list[dict[str, Any]] | None = None):
        super().__init__(code, message)
        self.issues = issues or []


class PermissionDenied(CompassError):
    """Role insufficient, or last-owner protection triggered."""
