# app/core/errors.py
"""
Typed domain errors for the dispatch core.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to ``HTTPException``
without embedding business logic in the route handlers.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Malformed input or an illegal state transition (400)."""

    status_code = 400


class AuthorizationError(DispatchError):
    """Actor is not permitted to perform the transition (403)."""

    status_code = 403


class NotFoundError(DispatchError):
    """Incident or offer does not exist (404)."""

    status_code = 404


class ConflictError(DispatchError):
    """Lost a race: offer no longer pending, incident already assigned (409)."""

    status_code = 409


class UpstreamError(DispatchError):
    """Vendor roster or another collaborator failed (502)."""

    status_code = 502
