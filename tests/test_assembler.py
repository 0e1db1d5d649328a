"""Tests for the ZIP container writer and reader."""

import dataclasses
import zipfile
from pathlib import Path
from typing import List

import pytest

import cba


@pytest.fixture
def members(tmp_path: Path, compressible: bytes, incompressible) -> List[cba.EncodedMember]:
    src = tmp_path / "src"
    src.mkdir()
    pages = [("0.gif", compressible), ("1.png", incompressible(2048)), ("2.jpg", compressible[:500])]
    paths = []
    for name, data in pages:
        (src / name).write_bytes(data)
        paths.append(src / name)
    return cba.encode_members(paths, [n for n, _ in pages], jobs=1)


class TestAssembleArchive:
    """Tests for writing archives."""

    def test_zipfile_reads_members_in_order(self, tmp_path: Path, members):
        out = tmp_path / "book.cbz"
        size = cba.assemble_archive(out, members)
        assert size == out.stat().st_size
        with zipfile.ZipFile(out) as zf:
            assert zf.namelist() == ["0.gif", "1.png", "2.jpg"]
            assert zf.testzip() is None
            for m in members:
                info = zf.getinfo(m.name)
                expected = zipfile.ZIP_DEFLATED if m.is_precompressed else zipfile.ZIP_STORED
                assert info.compress_type == expected
                assert info.compress_size == m.stored_size
                assert cba.content_digest(zf.read(m.name)) == m.digest

    def test_precompressed_payload_copied_verbatim(self, tmp_path: Path, members):
        out = tmp_path / "book.cbz"
        cba.assemble_archive(out, members)
        blob = out.read_bytes()
        for m in members:
            assert m.payload in blob

    def test_no_temp_file_left(self, tmp_path: Path, members):
        out = tmp_path / "book.cbz"
        cba.assemble_archive(out, members)
        assert not (tmp_path / "book.cbz.tmp").exists()

    def test_unwritable_location(self, tmp_path: Path, members):
        out = tmp_path / "missing" / "book.cbz"
        with pytest.raises(cba.AssemblyError) as exc:
            cba.assemble_archive(out, members)
        assert exc.value.stage == "assemble"
        assert not out.exists()

    def test_member_limit(self, tmp_path: Path, members, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(cba, "ZIP32_MAX_MEMBERS", 2)
        out = tmp_path / "book.cbz"
        with pytest.raises(cba.AssemblyError):
            cba.assemble_archive(out, members)
        assert not out.exists()
        assert not (tmp_path / "book.cbz.tmp").exists()

    def test_utf8_names_flagged(self, tmp_path: Path, members):
        renamed = [dataclasses.replace(members[0], name="표지.gif")]
        out = tmp_path / "book.cbz"
        cba.assemble_archive(out, renamed)
        with zipfile.ZipFile(out) as zf:
            assert zf.namelist() == ["표지.gif"]
            assert zf.getinfo("표지.gif").flag_bits & cba.FLAG_UTF8

    def test_reproducible_timestamps(self, tmp_path: Path, members):
        fixed = [dataclasses.replace(m, date_time=cba.DOS_EPOCH) for m in members]
        a, b = tmp_path / "a.cbz", tmp_path / "b.cbz"
        cba.assemble_archive(a, fixed)
        cba.assemble_archive(b, fixed)
        assert a.read_bytes() == b.read_bytes()
        with zipfile.ZipFile(a) as zf:
            assert zf.getinfo("0.gif").date_time == cba.DOS_EPOCH


class TestReadBack:
    """Tests for the reader and verification."""

    def test_read_members(self, tmp_path: Path, members):
        out = tmp_path / "book.cbz"
        cba.assemble_archive(out, members)
        infos = cba.read_members(out)
        assert [(i.name, i.method, i.comp_size, i.raw_size) for i in infos] == [
            (m.name, m.method, m.stored_size, m.raw_size) for m in members
        ]

    def test_zstd_members_round_trip(self, tmp_path: Path, compressible: bytes):
        p = tmp_path / "0.gif"
        p.write_bytes(compressible)
        zm = cba.encode_members([p], ["0.gif"], codec=cba.CODEC_ZSTD, jobs=1)
        out = tmp_path / "book.cbz"
        cba.assemble_archive(out, zm)
        (info,) = cba.read_members(out)
        assert info.method == cba.METHOD_ZSTD
        with out.open("rb") as f:
            assert cba.read_member_bytes(f, info) == compressible
        cba.verify_archive(out, zm)

    def test_verify_passes(self, tmp_path: Path, members):
        out = tmp_path / "book.cbz"
        cba.assemble_archive(out, members)
        cba.verify_archive(out, members)

    def test_verify_detects_digest_mismatch(self, tmp_path: Path, members):
        out = tmp_path / "book.cbz"
        cba.assemble_archive(out, members)
        wrong = list(members)
        wrong[1] = dataclasses.replace(wrong[1], digest=b"\x00" * 32)
        with pytest.raises(cba.VerifyError):
            cba.verify_archive(out, wrong)

    def test_verify_detects_order_mismatch(self, tmp_path: Path, members):
        out = tmp_path / "book.cbz"
        cba.assemble_archive(out, members)
        with pytest.raises(cba.VerifyError):
            cba.verify_archive(out, list(reversed(members)))

    def test_not_a_zip(self, tmp_path: Path):
        junk = tmp_path / "junk.cbz"
        junk.write_bytes(b"not an archive")
        with pytest.raises(ValueError):
            cba.read_members(junk)
