"""Tests for trial encoding of single pages."""

import zlib
from pathlib import Path

import pytest

import cba


def _write(tmp_path: Path, name: str, data: bytes) -> Path:
    p = tmp_path / name
    p.write_bytes(data)
    return p


class TestEncodeMember:
    """Tests for the store-vs-compress decision."""

    def test_compressible_page_is_precompressed(self, tmp_path: Path, compressible: bytes):
        p = _write(tmp_path, "0.gif", compressible)
        m = cba.encode_member(p, "0.gif")
        assert m.is_precompressed
        assert m.method == cba.METHOD_DEFLATE
        assert m.stored_size < m.raw_size == len(compressible)
        assert zlib.decompress(m.payload, -zlib.MAX_WBITS) == compressible
        assert m.crc32 == zlib.crc32(compressible)

    def test_incompressible_page_is_stored(self, tmp_path: Path, incompressible):
        data = incompressible(4096)
        p = _write(tmp_path, "0.png", data)
        m = cba.encode_member(p, "0.png")
        assert not m.is_precompressed
        assert m.method == cba.METHOD_STORE
        assert m.payload == data

    def test_store_policy_skips_compression(self, tmp_path: Path, compressible: bytes):
        p = _write(tmp_path, "0.webp", compressible)
        m = cba.encode_member(p, "0.webp")
        assert m.method == cba.METHOD_STORE
        assert m.payload == compressible

    def test_jpeg_policy_lookup_is_normalized(self, tmp_path: Path, compressible: bytes):
        p = _write(tmp_path, "0.JPEG", compressible)
        m = cba.encode_member(p, "0.jpg", policy={"jpg": cba.EFFORT_STORE})
        assert m.method == cba.METHOD_STORE

    def test_zstd_codec(self, tmp_path: Path, compressible: bytes):
        p = _write(tmp_path, "0.gif", compressible)
        m = cba.encode_member(p, "0.gif", codec=cba.CODEC_ZSTD)
        assert m.method == cba.METHOD_ZSTD
        assert cba.decompress_payload(m.method, m.payload, m.raw_size) == compressible

    def test_never_larger_than_always_compress(self, tmp_path: Path, compressible: bytes, incompressible):
        for name, data in (("0.gif", compressible), ("1.gif", incompressible(8192))):
            p = _write(tmp_path, name, data)
            m = cba.encode_member(p, name)
            always = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
            naive = always.compress(data) + always.flush()
            assert m.stored_size <= len(naive)
            assert m.stored_size <= m.raw_size

    def test_source_is_not_modified(self, tmp_path: Path, compressible: bytes):
        p = _write(tmp_path, "0.gif", compressible)
        cba.encode_member(p, "0.gif")
        assert p.read_bytes() == compressible

    def test_fixed_date_time(self, tmp_path: Path):
        p = _write(tmp_path, "0.gif", b"GIF89a")
        m = cba.encode_member(p, "0.gif", date_time=cba.DOS_EPOCH)
        assert m.date_time == cba.DOS_EPOCH

    def test_digest_is_blake3_of_source(self, tmp_path: Path, compressible: bytes):
        p = _write(tmp_path, "0.gif", compressible)
        m = cba.encode_member(p, "0.gif")
        assert m.digest == cba.content_digest(compressible)
        assert len(m.digest) == 32

    def test_empty_file_is_fatal(self, tmp_path: Path):
        p = _write(tmp_path, "0.png", b"")
        with pytest.raises(cba.EncodeError) as exc:
            cba.encode_member(p, "0.png")
        assert exc.value.stage == "encode"
        assert "empty" in str(exc.value)

    def test_missing_file_is_fatal(self, tmp_path: Path):
        with pytest.raises(cba.EncodeError):
            cba.encode_member(tmp_path / "0.png", "0.png")

    def test_unknown_effort_is_an_encode_error(self, tmp_path: Path, compressible: bytes):
        p = _write(tmp_path, "0.gif", compressible)
        with pytest.raises(cba.EncodeError, match="unknown compression effort"):
            cba.encode_member(p, "0.gif", policy={"gif": "fast"})


class TestEncodeMembers:
    """Tests for the parallel, order-preserving encode step."""

    def test_results_follow_input_order(self, tmp_path: Path, compressible: bytes, incompressible):
        paths, names = [], []
        for i in range(24):
            # alternate big/small pages so completion order differs from submission order
            data = compressible * (3 if i % 2 == 0 else 1) if i % 3 else incompressible(1024 + i)
            name = f"{i:02d}.gif"
            paths.append(_write(tmp_path, name, data))
            names.append(name)
        members = cba.encode_members(paths, names, jobs=4)
        assert [m.name for m in members] == names
        assert [m.raw_size for m in members] == [p.stat().st_size for p in paths]

    def test_sources_are_carried(self, tmp_path: Path):
        p = _write(tmp_path, "0.gif", b"GIF89a")
        (m,) = cba.encode_members([p], ["0.gif"], sources=["a1.gif"], jobs=1)
        assert m.source == "a1.gif"

    def test_one_failure_aborts(self, tmp_path: Path, compressible: bytes):
        paths = [_write(tmp_path, f"{i}.gif", compressible) for i in range(5)]
        paths[3].write_bytes(b"")
        with pytest.raises(cba.EncodeError):
            cba.encode_members(paths, [p.name for p in paths], jobs=3)
