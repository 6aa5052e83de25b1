"""
Canonical JSON text and content hashes.

Two payloads that are equal as JSON values (ignoring object key order) hash
identically: object keys are sorted at every depth, arrays keep their order and
the text uses compact separators.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any


def canonicalize_json(value: Any) -> str:
    """Serialize *value* to its canonical JSON text."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def sha256_bytes(data: bytes) -> str:
    """Compute sha256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def payload_hash(payload: Any) -> str:
    """64-char hex content address of a document payload."""
    return sha256_text(canonicalize_json(payload))
