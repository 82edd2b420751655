import io
import stat
import tarfile
import zipfile

import pytest

from nightwatch.errors import ExtractError
from nightwatch.extract import extract
from nightwatch.staging import StagingArea

from conftest import make_zip


@pytest.fixture
def staging(tmp_path):
    with StagingArea.create(tmp_path / "state") as area:
        yield area


def _stage_archive(staging: StagingArea, rel: str, data: bytes):
    path = staging.archive_path(rel)
    staging.ensure_parent(path)
    path.write_bytes(data)
    return path

def _tar(members) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for info, data in members:
            tar.addfile(info, io.BytesIO(data) if data is not None else None)
    return buffer.getvalue()

def _file_info(name: str, data: bytes) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mtime = 1_700_000_000
    return info


def test_zip_is_unpacked_into_staging_tree(staging):
    archive = _stage_archive(staging, "addons/pack", make_zip({"a.txt": b"A", "sub/b.txt": b"B", "c.txt": b"C"}))
    target = extract(archive, staging, "addons/pack")
    assert target == staging.tree_path("addons/pack")
    assert (target / "a.txt").read_bytes() == b"A"
    assert (target / "sub" / "b.txt").read_bytes() == b"B"

def test_single_root_folder_is_stripped(staging):
    archive = _stage_archive(staging, "mods/x", make_zip({"x-1.2/": b"", "x-1.2/init.lua": b"print()", "x-1.2/data/y": b"y"}))
    target = extract(archive, staging, "mods/x")
    assert (target / "init.lua").read_bytes() == b"print()"
    assert (target / "data" / "y").exists()
    assert not (target / "x-1.2").exists()

def test_root_folder_kept_when_stripping_disabled(staging):
    archive = _stage_archive(staging, "mods/x", make_zip({"x/init.lua": b"1"}))
    target = extract(archive, staging, "mods/x", strip_single_root=False)
    assert (target / "x" / "init.lua").exists()

def test_single_top_level_file_is_not_stripped(staging):
    archive = _stage_archive(staging, "mods/x", make_zip({"only.txt": b"1"}))
    target = extract(archive, staging, "mods/x")
    assert (target / "only.txt").read_bytes() == b"1"

def test_tar_gz_is_supported(staging):
    archive = _stage_archive(staging, "tools", _tar([(_file_info("bin/tool", b"#!"), b"#!")]))
    target = extract(archive, staging, "tools")
    assert (target / "tool").read_bytes() == b"#!"
    assert (target / "tool").stat().st_mtime == 1_700_000_000

@pytest.mark.parametrize("name", ["../escape.txt", "a/../../escape.txt", "/abs.txt", "C:/win.txt", "a\\..\\b"])
def test_traversal_members_reject_whole_archive(staging, name):
    archive = _stage_archive(staging, "evil", make_zip({"ok.txt": b"fine", name: b"bad"}))
    with pytest.raises(ExtractError):
        extract(archive, staging, "evil")
    assert not staging.tree_path("evil").exists()
    assert not (staging.path / "escape.txt").exists()

def test_zip_symlink_member_is_rejected(staging):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        info = zipfile.ZipInfo("link")
        info.external_attr = (stat.S_IFLNK | 0o777) << 16
        zf.writestr(info, "/etc/passwd")
    archive = _stage_archive(staging, "evil", buffer.getvalue())
    with pytest.raises(ExtractError, match="symbolic link"):
        extract(archive, staging, "evil")
    assert not staging.tree_path("evil").exists()

def test_tar_link_member_is_rejected(staging):
    link = tarfile.TarInfo("link")
    link.type = tarfile.SYMTYPE
    link.linkname = "/etc/passwd"
    archive = _stage_archive(staging, "evil", _tar([(_file_info("a", b"a"), b"a"), (link, None)]))
    with pytest.raises(ExtractError, match="link"):
        extract(archive, staging, "evil")
    assert not staging.tree_path("evil").exists()

def test_unknown_format_is_rejected(staging):
    archive = _stage_archive(staging, "blob", b"this is not an archive")
    with pytest.raises(ExtractError, match="Unsupported"):
        extract(archive, staging, "blob")
    assert not staging.tree_path("blob").exists()

def test_corrupt_zip_is_cleaned_up(staging):
    data = bytearray(make_zip({"a.txt": b"A" * 1000}))
    # Corrupt the stored file data; the central directory stays intact.
    data[40:60] = b"\x00" * 20
    archive = _stage_archive(staging, "broken", bytes(data))
    with pytest.raises(ExtractError):
        extract(archive, staging, "broken")
    assert not staging.tree_path("broken").exists()
