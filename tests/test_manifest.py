import json

import pytest

from nightwatch.errors import ParseError
from nightwatch.manifest import empty_manifest, parse, serialize_manifest

from conftest import GENERATED_AT, make_manifest, manifest_json, sha


def _doc(**overrides):
    doc = {
        "version": 2,
        "generated_at": GENERATED_AT.isoformat(),
        "files": [{"relative_path": "bin/app", "size_bytes": 3, "checksum": sha(b"abc")}],
    }
    doc.update(overrides)
    return json.dumps(doc).encode("utf-8")


def test_parse_valid_manifest():
    manifest = parse(manifest_json(7, {"bin/app": b"abc", "data/x.pak": b"12345"}))
    assert manifest.version == 7
    assert manifest.generated_at == GENERATED_AT
    assert set(manifest.files) == {"bin/app", "data/x.pak"}
    assert manifest.files["data/x.pak"].size_bytes == 5
    assert not manifest.files["bin/app"].is_archive

def test_parse_ignores_unknown_fields():
    doc = json.loads(_doc())
    doc["publisher"] = "ci"
    doc["files"][0]["mode"] = "0755"
    manifest = parse(json.dumps(doc).encode("utf-8"))
    assert "bin/app" in manifest

def test_checksum_is_normalised_to_lowercase():
    doc = json.loads(_doc())
    doc["files"][0]["checksum"] = sha(b"abc").upper()
    manifest = parse(json.dumps(doc).encode("utf-8"))
    assert manifest.files["bin/app"].checksum == sha(b"abc")

@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[]",
        b"\xff\xfe",
        _doc(version=-1),
        _doc(version="3"),
        _doc(version=1.5),
        _doc(generated_at="yesterday"),
        _doc(files=[{"relative_path": "a", "size_bytes": 1, "checksum": "xyz"}]),
        _doc(files=[{"relative_path": "a", "size_bytes": -1, "checksum": sha(b"")}]),
        _doc(files=[{"relative_path": "a", "size_bytes": 2**64, "checksum": sha(b"")}]),
        _doc(files=[{"relative_path": "a", "size_bytes": "1", "checksum": sha(b"a")}]),
        _doc(files=[{"relative_path": "a", "size_bytes": 1, "checksum": sha(b"a"), "url": "http://x/a"}]),
    ],
)
def test_malformed_manifests_are_rejected(raw):
    with pytest.raises(ParseError):
        parse(raw)

def test_duplicate_paths_are_rejected():
    entry = {"relative_path": "a", "size_bytes": 1, "checksum": sha(b"a")}
    with pytest.raises(ParseError, match="Duplicate"):
        parse(_doc(files=[entry, dict(entry)]))

def test_entry_that_is_also_a_parent_directory_is_rejected():
    files = [
        {"relative_path": "addons", "size_bytes": 1, "checksum": sha(b"a"), "is_archive": True},
        {"relative_path": "addons/extra.txt", "size_bytes": 1, "checksum": sha(b"b")},
    ]
    with pytest.raises(ParseError, match="parent directory"):
        parse(_doc(files=files))

def test_serialize_then_parse_preserves_entries():
    manifest = make_manifest(4, {"a.txt": b"a", "addons/pack": b"zip"}, archives=("addons/pack",))
    again = parse(serialize_manifest(manifest))
    assert again == manifest
    assert again.version == 4
    assert again.files["addons/pack"].is_archive

def test_equality_ignores_metadata():
    a = make_manifest(1, {"x": b"1"})
    b = make_manifest(9, {"x": b"1"})
    assert a == b
    assert a != make_manifest(1, {"x": b"2"})

def test_empty_manifest():
    manifest = empty_manifest()
    assert manifest.version == 0
    assert len(manifest) == 0
    assert manifest.total_size == 0
