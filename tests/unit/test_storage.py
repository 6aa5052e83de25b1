from __future__ import annotations

import pytest

from packages.shared import storage
from packages.shared.errors import StorageKeyError


@pytest.fixture(autouse=True)
def documents_dir(tmp_path, monkeypatch):
    root = tmp_path / "documents"
    monkeypatch.setattr(storage, "DOCUMENTS_DIR", root)
    return root


def test_put_then_get_round_trip(documents_dir):
    key = storage.put_pdf("t1", "doc1", b"%PDF-1.4 test")
    assert key == "t1/doc1.pdf"
    assert (documents_dir / "t1" / "doc1.pdf").read_bytes() == b"%PDF-1.4 test"
    assert storage.get_pdf("t1", key) == b"%PDF-1.4 test"


def test_put_leaves_no_temp_file(documents_dir):
    storage.put_pdf("t1", "doc1", b"data")
    assert sorted(p.name for p in (documents_dir / "t1").iterdir()) == ["doc1.pdf"]


def test_key_of_another_tenant_is_rejected():
    key = storage.put_pdf("t1", "doc1", b"data")
    with pytest.raises(StorageKeyError):
        storage.get_pdf("t2", key)


@pytest.mark.parametrize("key", ["t1/../t2/doc.pdf", "t1/../../etc/passwd", "../t1/doc.pdf"])
def test_traversal_keys_are_rejected(key):
    with pytest.raises(StorageKeyError):
        storage.get_pdf("t1", key)


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        storage.get_pdf("t1", "t1/never-written.pdf")
