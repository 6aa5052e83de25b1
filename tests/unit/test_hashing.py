from __future__ import annotations

import pytest

from packages.shared.hashing import canonicalize_json, payload_hash, sha256_bytes


def test_canonical_text_sorts_keys_at_every_depth():
    value = {"b": 1, "a": {"z": [3, {"y": 2, "x": 1}], "m": None}}
    assert canonicalize_json(value) == '{"a":{"m":null,"z":[3,{"x":1,"y":2}]},"b":1}'


def test_hash_ignores_key_order():
    first = {"meta": {"templateVersion": 1, "payloadVersion": 1}, "patient": {"name": "Ana", "id": "p1"}}
    second = {"patient": {"id": "p1", "name": "Ana"}, "meta": {"payloadVersion": 1, "templateVersion": 1}}
    assert payload_hash(first) == payload_hash(second)


def test_hash_keeps_array_order():
    assert payload_hash({"tests": [1, 2]}) != payload_hash({"tests": [2, 1]})


def test_hash_is_64_hex_chars():
    digest = payload_hash({"a": 1})
    assert len(digest) == 64
    assert all(c in "0123456789abcdef" for c in digest)


def test_non_ascii_text_is_kept_verbatim():
    assert canonicalize_json({"name": "Zoë"}) == '{"name":"Zoë"}'


def test_nan_is_rejected():
    with pytest.raises(ValueError):
        canonicalize_json({"value": float("nan")})


def test_sha256_bytes_known_digest():
    assert sha256_bytes(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
