"""
Domain error taxonomy shared by the API, the workflow services and the worker.
"""
from __future__ import annotations

from typing import Any

# Encounter state machine
ENCOUNTER_STATE_INVALID = "ENCOUNTER_STATE_INVALID"
ENCOUNTER_FINALIZE_BLOCKED_UNVERIFIED_LAB = "ENCOUNTER_FINALIZE_BLOCKED_UNVERIFIED_LAB"
INVALID_ENCOUNTER_TYPE = "INVALID_ENCOUNTER_TYPE"
PATIENT_NOT_FOUND = "PATIENT_NOT_FOUND"
PREP_INCOMPLETE = "PREP_INCOMPLETE"
MAIN_INCOMPLETE = "MAIN_INCOMPLETE"

# Lab workflow
LAB_ORDER_EMPTY = "LAB_ORDER_EMPTY"
LAB_TEST_NOT_FOUND = "LAB_TEST_NOT_FOUND"
LAB_TEST_ALREADY_ORDERED = "LAB_TEST_ALREADY_ORDERED"
LAB_PARAMETER_NOT_FOUND = "LAB_PARAMETER_NOT_FOUND"
LAB_RESULTS_LOCKED = "LAB_RESULTS_LOCKED"
LAB_RESULTS_NOT_READY = "LAB_RESULTS_NOT_READY"
LAB_RESULTS_INCOMPLETE = "LAB_RESULTS_INCOMPLETE"
LAB_ALREADY_VERIFIED = "LAB_ALREADY_VERIFIED"
LAB_PUBLISH_BLOCKED_NOT_FINALIZED = "LAB_PUBLISH_BLOCKED_NOT_FINALIZED"
LAB_PUBLISH_BLOCKED_NO_VERIFIED_TESTS = "LAB_PUBLISH_BLOCKED_NO_VERIFIED_TESTS"
AMBIGUOUS_REFERENCE_RANGE_MATCH = "AMBIGUOUS_REFERENCE_RANGE_MATCH"

# Documents
INVALID_DOCUMENT_TYPE = "INVALID_DOCUMENT_TYPE"
DOCUMENT_NOT_RENDERED = "DOCUMENT_NOT_RENDERED"
RENDER_FAILED = "RENDER_FAILED"


class DomainError(Exception):
    """A business-rule violation. Surfaces as HTTP 409 with a stable code."""

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def to_failure(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(Exception):
    """Missing or cross-tenant resource. Never reveals which of the two."""

    def __init__(self, resource: str, resource_id: str | None = None):
        super().__init__(f"{resource} not found")
        self.resource = resource
        self.resource_id = resource_id


class StorageKeyError(Exception):
    """A storage key outside the caller's tenant prefix or storage root."""
