"""
Validate document payloads against the document payload JSON schema.

Payloads are hashed to address documents, so a payload that drifts from the
schema is a programming error: `ensure_valid_document_payload` raises instead
of letting a malformed payload get a content address.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema

_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "document-payload.schema.json"
_validator: jsonschema.Draft202012Validator | None = None

MAX_REPORTED_ERRORS = 5


class PayloadSchemaError(ValueError):
    """A built document payload does not match the schema."""

    def __init__(self, document_type: str | None, errors: list[str]):
        self.document_type = document_type
        self.errors = errors
        shown = "; ".join(errors[:MAX_REPORTED_ERRORS])
        more = len(errors) - MAX_REPORTED_ERRORS
        if more > 0:
            shown += f" (+{more} more)"
        super().__init__(f"{document_type or 'Document'} payload failed schema validation: {shown}")


def _get_validator() -> jsonschema.Draft202012Validator:
    global _validator
    if _validator is None:
        with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
            schema = json.load(f)
        jsonschema.Draft202012Validator.check_schema(schema)
        _validator = jsonschema.Draft202012Validator(schema)
    return _validator


def _pointer(error: jsonschema.ValidationError) -> str:
    return "/".join(str(p) for p in error.absolute_path) or "(root)"


def validate_document_payload(data: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate *data* against the document payload schema.
    Returns (is_valid, list_of_error_messages).
    """
    errors = sorted(_get_validator().iter_errors(data), key=lambda e: list(e.absolute_path))
    messages = [f"{_pointer(e)}: {e.message}" for e in errors]
    return (len(messages) == 0, messages)


def ensure_valid_document_payload(data: dict[str, Any]) -> None:
    is_valid, messages = validate_document_payload(data)
    if not is_valid:
        meta = data.get("meta") if isinstance(data, dict) else None
        document_type = meta.get("requestedDocumentType") if isinstance(meta, dict) else None
        raise PayloadSchemaError(document_type, messages)
