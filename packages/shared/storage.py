"""
Local disk storage for rendered document PDFs.

Keys have the shape ``{tenant_id}/{document_id}.pdf`` relative to
``DATA_DIR/documents``. A key is only honoured for the tenant it starts with
and only when it resolves inside the storage root.
"""
from __future__ import annotations

import os
from pathlib import Path

from packages.shared.errors import StorageKeyError

DATA_DIR = Path(os.environ.get("DATA_DIR", "./data"))
DOCUMENTS_DIR = DATA_DIR / "documents"
STORAGE_BACKEND = "local"


def ensure_dirs() -> None:
    """Create data directories if they don't exist."""
    DOCUMENTS_DIR.mkdir(parents=True, exist_ok=True)


def build_storage_key(tenant_id: str, document_id: str) -> str:
    return f"{tenant_id}/{document_id}.pdf"


def _resolve(tenant_id: str, storage_key: str) -> Path:
    if not tenant_id or not storage_key.startswith(f"{tenant_id}/"):
        raise StorageKeyError("Storage key does not belong to tenant")
    root = DOCUMENTS_DIR.resolve()
    path = (root / storage_key).resolve()
    try:
        path.relative_to(root)
    except ValueError as exc:
        raise StorageKeyError("Storage key escapes storage root") from exc
    tenant_root = (root / tenant_id).resolve()
    if tenant_root not in path.parents:
        raise StorageKeyError("Storage key escapes tenant root")
    return path


def put_pdf(tenant_id: str, document_id: str, data: bytes) -> str:
    """Write PDF bytes and return the storage key."""
    storage_key = build_storage_key(tenant_id, document_id)
    path = _resolve(tenant_id, storage_key)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".pdf.tmp")
    tmp_path.write_bytes(data)
    os.replace(tmp_path, path)
    return storage_key


def get_pdf(tenant_id: str, storage_key: str) -> bytes:
    """Read PDF bytes previously written for *tenant_id*."""
    path = _resolve(tenant_id, storage_key)
    if not path.exists():
        raise FileNotFoundError(storage_key)
    return path.read_bytes()
