"""cba reference implementation (Python).

cba turns a directory of loosely numbered page images into one comic book
archive. Pages are put in natural order (img2 before img10), renamed in place to
zero-padded canonical names (0.jpg, 1.jpg, ... or 00.jpg ... 42.jpg) and packed
into `<dir>.cbz` next to the directory.

Every page is trial-compressed and kept compressed only when that is strictly
smaller than the raw bytes; the compressed payload is then copied verbatim into
the container, so no page is ever compressed twice.

Determinism:
- Member order is always canonical numeric order, never worker completion order.
- With --reproducible, member timestamps come from SOURCE_DATE_EPOCH (or 1980-01-01).

CLI (subcommands):
  a  archive one or more directories
  l  list archive members
  t  test archive (decode + CRC)
  x  extract archive

Notable flags:
  --codec deflate|zstd       codec used for pages worth compressing
  --format cbz|cb7|auto      cb7 delegates container writing to an external 7z
  --recursive                archive every non-empty subdirectory as well
"""



from __future__ import annotations

import argparse
import concurrent.futures
import dataclasses
import functools
import os
import pathlib
import re
import shutil
import struct
import subprocess
import sys
import threading
import time
import zlib
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import zstandard as zstd
from blake3 import blake3


# Thread-local compressor cache (encode workers share nothing)
_TLS = threading.local()

def _get_zstd_compressor(level: int) -> zstd.ZstdCompressor:
    """Return a per-thread cached ZstdCompressor for the given level."""
    cache = getattr(_TLS, "zstd_cache", None)
    if cache is None:
        cache = {}
        _TLS.zstd_cache = cache
    c = cache.get(level)
    if c is None:
        # threads=1 keeps framing identical across runs
        c = zstd.ZstdCompressor(level=level, threads=1, write_content_size=True)
        cache[level] = c
    return c

# -----------------------------
# Versioning
# -----------------------------
TOOL_VERSION = "0.1.0"
__version__ = TOOL_VERSION

# -----------------------------
# Inputs / naming
# -----------------------------
DEF_EXTENSIONS = ("avif", "gif", "heic", "jpeg", "jpg", "png", "tif", "tiff", "webp")
EXT_ALIASES = {"jpeg": "jpg"}

# maximal ASCII digit runs; the value must fit an unsigned 64-bit integer
NUMBER_RE = re.compile(r"[0-9]+")
NATURAL_MAX = (1 << 64) - 1
NATURAL_MAX_DIGITS = len(str(NATURAL_MAX))

TMP_MARKER = ".cba-tmp-"

# -----------------------------
# Compression policy
# -----------------------------
EFFORT_STORE = "store"
EFFORT_NORMAL = "normal"
EFFORT_MAX = "max"
EFFORTS = (EFFORT_STORE, EFFORT_NORMAL, EFFORT_MAX)

# keyed by normalized extension; anything missing is EFFORT_NORMAL
DEF_POLICY = {
    "avif": EFFORT_STORE,
    "heic": EFFORT_STORE,
    "webp": EFFORT_STORE,
    "jpg": EFFORT_NORMAL,
    "png": EFFORT_NORMAL,
    "gif": EFFORT_MAX,
    "tif": EFFORT_MAX,
    "tiff": EFFORT_MAX,
}

CODEC_DEFLATE = "deflate"
CODEC_ZSTD = "zstd"
CODECS = (CODEC_DEFLATE, CODEC_ZSTD)

DEFLATE_LEVEL = {EFFORT_NORMAL: 6, EFFORT_MAX: 9}
ZSTD_LEVEL = {EFFORT_NORMAL: 3, EFFORT_MAX: 19}

# -----------------------------
# Container formats
# -----------------------------
FORMAT_CBZ = "cbz"
FORMAT_CB7 = "cb7"
FORMAT_AUTO = "auto"
FORMATS = (FORMAT_CBZ, FORMAT_CB7, FORMAT_AUTO)

# auto: small books go to 7z, large ones to zip
AUTO_CB7_MAX = 16 * 1024 * 1024

SEVENZIP_CANDIDATES = ("7z", "7zz", "/usr/local/bin/7z", "/opt/local/bin/7z")
# add, max compression, UTF-8 names, solid 7z
SEVENZIP_ARGS = ("a", "-mx=9", "-mcu=on", "-t7z", "-ms=on")

# -----------------------------
# ZIP container layout
# -----------------------------
METHOD_STORE = 0
METHOD_DEFLATE = 8
METHOD_ZSTD = 93
METHOD_NAME = {METHOD_STORE: "store", METHOD_DEFLATE: "deflate", METHOD_ZSTD: "zstd"}
VERSION_NEEDED = {METHOD_STORE: 10, METHOD_DEFLATE: 20, METHOD_ZSTD: 63}
VERSION_MADE_BY = (3 << 8) | 63  # unix, APPNOTE 6.3
EXTERNAL_ATTR = 0o100644 << 16
FLAG_UTF8 = 1 << 11

SIG_LOCAL = b"PK\x03\x04"
SIG_CENTRAL = b"PK\x01\x02"
SIG_EOCD = b"PK\x05\x06"

# local header:
#   sig, version_needed, flags, method, dos_time, dos_date,
#   crc32, comp_size, raw_size, name_len, extra_len
LOCAL_HDR = struct.Struct("<4sHHHHHIIIHH")
# central header:
#   sig, version_made_by, version_needed, flags, method, dos_time, dos_date,
#   crc32, comp_size, raw_size, name_len, extra_len, comment_len,
#   disk_start, internal_attr, external_attr, local_offset
CENTRAL_HDR = struct.Struct("<4sHHHHHHIIIHHHHHII")
# end of central directory:
#   sig, disk, cd_disk, entries_disk, entries_total, cd_size, cd_offset, comment_len
EOCD = struct.Struct("<4sHHHHIIH")
EOCD_SEARCH = EOCD.size + 0xFFFF

ZIP32_MAX_MEMBERS = 0xFFFF
ZIP32_MAX_SIZE = 0xFFFFFFFF

DOS_EPOCH = (1980, 1, 1, 0, 0, 0)
DOS_MAX = (2107, 12, 31, 23, 59, 58)

# -----------------------------
# Errors
# -----------------------------
class CBAError(Exception):
    """Fatal condition for one directory (or the whole run), tagged with its stage."""

    stage = "error"

    def __init__(self, path: Optional[os.PathLike], detail: str) -> None:
        self.path = pathlib.Path(path) if path is not None else None
        self.detail = detail
        if self.path is None:
            super().__init__(f"{self.stage}: {detail}")
        else:
            super().__init__(f"{self.stage}: {self.path}: {detail}")

class InputError(CBAError):
    stage = "input"

class RenameError(CBAError):
    stage = "rename"

class EncodeError(CBAError):
    stage = "encode"

class AssemblyError(CBAError):
    stage = "assemble"

class VerifyError(CBAError):
    stage = "verify"

class ToolUnavailableError(CBAError):
    stage = "environment"

class NaturalKeyOverflow(ValueError):
    pass

# -----------------------------
# Utilities
# -----------------------------
def source_date_epoch() -> Optional[int]:
    """
    Reproducible-build timestamp source.

    If the environment variable SOURCE_DATE_EPOCH is set (integer seconds since Unix epoch),
    return it. Otherwise (or when it is malformed) return None.
    """
    v = os.environ.get("SOURCE_DATE_EPOCH")
    if not v:
        return None
    try:
        sec = int(v.strip())
    except ValueError:
        return None
    if sec < 0:
        return None
    return sec

def clamp_date_time(dt: Sequence[int]) -> Tuple[int, int, int, int, int, int]:
    dt = tuple(int(x) for x in dt[:6])
    if dt < DOS_EPOCH:
        return DOS_EPOCH
    if dt > DOS_MAX:
        return DOS_MAX
    return dt  # type: ignore[return-value]

def member_date_time(mtime: float) -> Tuple[int, int, int, int, int, int]:
    return clamp_date_time(time.localtime(mtime))

def reproducible_date_time() -> Tuple[int, int, int, int, int, int]:
    sec = source_date_epoch()
    if sec is None:
        return DOS_EPOCH
    return clamp_date_time(time.gmtime(sec))

def dos_pack(dt: Sequence[int]) -> Tuple[int, int]:
    y, mo, d, h, mi, s = dt
    return (h << 11) | (mi << 5) | (s // 2), ((y - 1980) << 9) | (mo << 5) | d

def crc32_bytes(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF

def content_digest(data: bytes) -> bytes:
    return blake3(data).digest(length=32)

def digits(n: int) -> int:
    return len(str(abs(int(n))))

def effective_jobs(jobs: int) -> int:
    if jobs <= 0:
        cpu = os.cpu_count() or 1
        # leave one core for OS/UI; cap to avoid huge worker counts
        return max(1, min(32, cpu - 1))
    return max(1, int(jobs))

# -----------------------------
# Natural order
# -----------------------------
def natural_key(name: str) -> Tuple[int, ...]:
    """Unsigned integer values of the digit runs in `name`, in encounter order."""
    out: List[int] = []
    for m in NUMBER_RE.finditer(name):
        run = m.group(0).lstrip("0") or "0"
        if len(run) > NATURAL_MAX_DIGITS or int(run) > NATURAL_MAX:
            raise NaturalKeyOverflow(f"numeric run out of range in {name!r}: {m.group(0)}")
        out.append(int(run))
    return tuple(out)

def _compare_keyed(a: Tuple[str, Tuple[int, ...]], b: Tuple[str, Tuple[int, ...]]) -> int:
    (na, ka), (nb, kb) = a, b
    for x, y in zip(ka, kb):
        if x != y:
            return -1 if x < y else 1
    # runs exhausted on either side (or no runs at all): plain name order
    if na == nb:
        return 0
    return -1 if na < nb else 1

def natural_compare(a: str, b: str) -> int:
    return _compare_keyed((a, natural_key(a)), (b, natural_key(b)))

def natural_sort(items: Iterable) -> list:
    """
    Sort paths (or plain names) in natural order of their final component.

    Raises NaturalKeyOverflow when a name carries a digit run beyond 2**64-1.
    """
    keyed = []
    for it in items:
        name = pathlib.PurePath(it).name
        keyed.append((name, natural_key(name), it))
    # start from name order so mixed numeric/non-numeric names sort the same every run
    keyed.sort(key=lambda t: t[0])
    keyed.sort(key=functools.cmp_to_key(lambda a, b: _compare_keyed(a[:2], b[:2])))
    return [t[2] for t in keyed]

# -----------------------------
# Canonical names / renames
# -----------------------------
def normalize_extension(ext: str) -> str:
    e = ext.lstrip(".").lower()
    return EXT_ALIASES.get(e, e)

def canonical_width(count: int) -> int:
    if count <= 1:
        return 1
    return max(1, digits(count - 1))

def canonical_names(paths: Sequence[pathlib.Path]) -> List[str]:
    width = canonical_width(len(paths))
    return [f"{i:0{width}d}.{normalize_extension(p.suffix)}" for i, p in enumerate(paths)]

@dataclass
class RenamePlan:
    sources: List[pathlib.Path]
    targets: List[pathlib.Path]
    # each phase runs to completion before the next starts
    phases: List[List[Tuple[pathlib.Path, pathlib.Path]]] = field(default_factory=list)

    @property
    def two_phase(self) -> bool:
        return len(self.phases) == 2

    @property
    def renames(self) -> int:
        return sum(len(ph) for ph in self.phases)

def _free_marker(directory: pathlib.Path) -> str:
    try:
        names = [n.casefold() for n in os.listdir(directory)]
    except OSError as e:
        raise RenameError(directory, f"cannot list directory: {e.strerror or e}") from e
    marker = TMP_MARKER
    n = 0
    while any(x.startswith(marker.casefold()) for x in names):
        n += 1
        marker = f"{TMP_MARKER}{n}-"
    return marker

def plan_renames(paths: Sequence[pathlib.Path], names: Sequence[str]) -> RenamePlan:
    """
    Compute every rename needed to bring `paths` (naturally sorted) to `names`.

    A direct, single-phase plan is used unless some target coincides with a
    different source; then all sources first move to marker-prefixed temporary
    names and only afterwards to their targets. Targets are compared
    case-insensitively so case-insensitive filesystems cannot alias two entries.
    """
    if len(paths) != len(names):
        raise ValueError("paths and names must align")
    sources = [pathlib.Path(p) for p in paths]
    targets = [p.with_name(n) for p, n in zip(sources, names)]

    by_name: Dict[str, List[int]] = {}
    for i, p in enumerate(sources):
        by_name.setdefault(p.name.casefold(), []).append(i)

    collision = False
    for i, t in enumerate(targets):
        owners = by_name.get(t.name.casefold())
        if owners is None:
            if os.path.lexists(t):
                raise RenameError(t, "target exists and is not one of the pages being renamed")
        elif any(j != i for j in owners):
            collision = True

    moves = [(s, t) for s, t in zip(sources, targets) if s.name != t.name]
    plan = RenamePlan(sources=sources, targets=targets)
    if not moves:
        return plan
    if not collision:
        plan.phases = [moves]
        return plan

    marker = _free_marker(moves[0][0].parent)
    staged = [(s, s.with_name(marker + s.name), t) for s, t in moves]
    plan.phases = [
        [(s, tmp) for s, tmp, _ in staged],
        [(tmp, t) for _, tmp, t in staged],
    ]
    return plan

def _same_file(a: pathlib.Path, b: pathlib.Path) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False

def execute_renames(plan: RenamePlan) -> None:
    """Run the plan phase by phase. There is no rollback on failure."""
    for phase in plan.phases:
        for src, dst in phase:
            if os.path.lexists(dst) and not _same_file(src, dst):
                raise RenameError(src, f"refusing to overwrite {dst.name}")
            try:
                os.rename(src, dst)
            except OSError as e:
                raise RenameError(src, f"rename to {dst.name} failed: {e.strerror or e}") from e

def canonicalize(paths: Sequence[pathlib.Path]) -> List[pathlib.Path]:
    names = canonical_names(paths)
    plan = plan_renames(paths, names)
    execute_renames(plan)
    return plan.targets

# -----------------------------
# Member encoding
# -----------------------------
@dataclass(frozen=True)
class EncodedMember:
    name: str
    payload: bytes
    is_precompressed: bool
    method: int
    raw_size: int
    crc32: int
    digest: bytes
    date_time: Tuple[int, int, int, int, int, int]
    source: str = ""

    @property
    def stored_size(self) -> int:
        return len(self.payload)

def compress_payload(data: bytes, codec: str, effort: str) -> Tuple[int, bytes]:
    if not data or effort == EFFORT_STORE:
        return METHOD_STORE, data
    if codec == CODEC_ZSTD:
        return METHOD_ZSTD, _get_zstd_compressor(ZSTD_LEVEL[effort]).compress(data)
    if codec == CODEC_DEFLATE:
        c = zlib.compressobj(DEFLATE_LEVEL[effort], zlib.DEFLATED, -zlib.MAX_WBITS)
        return METHOD_DEFLATE, c.compress(data) + c.flush()
    raise ValueError(f"unknown codec {codec}")

def decompress_payload(method: int, comp: bytes, raw_size: int) -> bytes:
    if method == METHOD_STORE:
        return comp
    if method == METHOD_DEFLATE:
        return zlib.decompress(comp, -zlib.MAX_WBITS)
    if method == METHOD_ZSTD:
        d = zstd.ZstdDecompressor()
        return d.decompress(comp, max_output_size=raw_size)
    raise ValueError(f"unsupported compression method {method}")

def encode_member(
    path: pathlib.Path,
    name: str,
    *,
    codec: str = CODEC_DEFLATE,
    policy: Optional[Dict[str, str]] = None,
    date_time: Optional[Tuple[int, int, int, int, int, int]] = None,
    source: str = "",
) -> EncodedMember:
    """
    Trial-encode one page.

    The compressed form wins only when it is strictly smaller than the raw
    bytes; otherwise the member is stored. The source file is only read.
    """
    path = pathlib.Path(path)
    try:
        data = path.read_bytes()
        st = path.stat()
    except OSError as e:
        raise EncodeError(path, f"cannot read: {e.strerror or e}") from e
    if not data:
        raise EncodeError(path, "file is empty")

    effort = (policy if policy is not None else DEF_POLICY).get(normalize_extension(path.suffix), EFFORT_NORMAL)
    if effort not in EFFORTS:
        raise EncodeError(path, f"unknown compression effort {effort!r} (expected {'|'.join(EFFORTS)})")
    try:
        method, comp = compress_payload(data, codec, effort)
    except (zlib.error, zstd.ZstdError, ValueError) as e:
        raise EncodeError(path, f"{codec} failed: {e}") from e
    if method != METHOD_STORE and len(comp) >= len(data):
        method, comp = METHOD_STORE, data

    return EncodedMember(
        name=name,
        payload=comp,
        is_precompressed=(method != METHOD_STORE),
        method=method,
        raw_size=len(data),
        crc32=crc32_bytes(data),
        digest=content_digest(data),
        date_time=date_time if date_time is not None else member_date_time(st.st_mtime),
        source=source or path.name,
    )

def encode_members(
    paths: Sequence[pathlib.Path],
    names: Sequence[str],
    *,
    codec: str = CODEC_DEFLATE,
    policy: Optional[Dict[str, str]] = None,
    jobs: int = 0,
    date_time: Optional[Tuple[int, int, int, int, int, int]] = None,
    sources: Optional[Sequence[str]] = None,
) -> List[EncodedMember]:
    """Encode every page in parallel; the result list is in input order."""
    if len(paths) != len(names):
        raise ValueError("paths and names must align")
    srcs = list(sources) if sources is not None else [""] * len(paths)
    results: List[Optional[EncodedMember]] = [None] * len(paths)

    def task(i: int) -> EncodedMember:
        return encode_member(paths[i], names[i], codec=codec, policy=policy,
                             date_time=date_time, source=srcs[i])

    eff_jobs = min(effective_jobs(jobs), max(1, len(paths)))
    if eff_jobs == 1:
        for i in range(len(paths)):
            results[i] = task(i)
        return results  # type: ignore[return-value]

    pool = concurrent.futures.ThreadPoolExecutor(max_workers=eff_jobs)
    try:
        futs = {pool.submit(task, i): i for i in range(len(paths))}
        for fut in concurrent.futures.as_completed(futs):
            results[futs[fut]] = fut.result()
    finally:
        # first failure drops everything still queued
        pool.shutdown(wait=True, cancel_futures=True)
    return results  # type: ignore[return-value]

# -----------------------------
# Container writer
# -----------------------------
def _encode_name(name: str) -> Tuple[bytes, int]:
    try:
        return name.encode("ascii"), 0
    except UnicodeEncodeError:
        return name.encode("utf-8"), FLAG_UTF8

def _write_zip(f, out_path: pathlib.Path, members: Sequence[EncodedMember]) -> None:
    if len(members) > ZIP32_MAX_MEMBERS:
        raise AssemblyError(out_path, f"too many members for ZIP32: {len(members)}")
    central: List[bytes] = []
    for m in members:
        offset = f.tell()
        if offset > ZIP32_MAX_SIZE or m.raw_size > ZIP32_MAX_SIZE:
            raise AssemblyError(out_path, f"archive exceeds ZIP32 size limits at {m.name}")
        name_b, flags = _encode_name(m.name)
        dos_time, dos_date = dos_pack(m.date_time)
        need = VERSION_NEEDED[m.method]
        f.write(LOCAL_HDR.pack(
            SIG_LOCAL, need, flags, m.method, dos_time, dos_date,
            m.crc32, m.stored_size, m.raw_size, len(name_b), 0,
        ))
        f.write(name_b)
        # payload goes in verbatim; precompressed bytes are never re-encoded
        f.write(m.payload)
        central.append(CENTRAL_HDR.pack(
            SIG_CENTRAL, VERSION_MADE_BY, need, flags, m.method, dos_time, dos_date,
            m.crc32, m.stored_size, m.raw_size, len(name_b), 0, 0,
            0, 0, EXTERNAL_ATTR, offset,
        ) + name_b)

    cd = b"".join(central)
    cd_offset = f.tell()
    if cd_offset + len(cd) > ZIP32_MAX_SIZE:
        raise AssemblyError(out_path, "archive exceeds ZIP32 size limits")
    f.write(cd)
    f.write(EOCD.pack(SIG_EOCD, 0, 0, len(members), len(members), len(cd), cd_offset, 0))

def assemble_archive(out_path: pathlib.Path, members: Sequence[EncodedMember]) -> int:
    """
    Write `members` in the given order into a ZIP container at `out_path`.

    The archive is built next to the target and moved into place only when
    complete, so a failure never leaves a partial archive behind. Returns the
    archive size in bytes.
    """
    out_path = pathlib.Path(out_path)
    tmp = out_path.with_name(out_path.name + ".tmp")
    done = False
    try:
        with tmp.open("wb") as f:
            _write_zip(f, out_path, members)
        os.replace(tmp, out_path)
        done = True
        return out_path.stat().st_size
    except OSError as e:
        raise AssemblyError(out_path, f"cannot write archive: {e.strerror or e}") from e
    finally:
        if not done:
            tmp.unlink(missing_ok=True)

# -----------------------------
# Container reader
# -----------------------------
@dataclass
class MemberInfo:
    name: str
    method: int
    flags: int
    crc32: int
    comp_size: int
    raw_size: int
    header_offset: int

def read_members(path: pathlib.Path) -> List[MemberInfo]:
    path = pathlib.Path(path)
    with path.open("rb") as f:
        f.seek(0, os.SEEK_END)
        size = f.tell()
        tail_len = min(size, EOCD_SEARCH)
        f.seek(size - tail_len)
        tail = f.read(tail_len)
        pos = tail.rfind(SIG_EOCD)
        if pos < 0 or pos + EOCD.size > len(tail):
            raise ValueError(f"not a zip archive: {path}")
        _sig, _disk, _cd_disk, _n_disk, count, cd_size, cd_offset, _clen = EOCD.unpack_from(tail, pos)
        if cd_offset + cd_size > size:
            raise ValueError("corrupt central directory bounds")
        f.seek(cd_offset)
        cd = f.read(cd_size)

    infos: List[MemberInfo] = []
    off = 0
    for _ in range(count):
        if off + CENTRAL_HDR.size > len(cd):
            raise ValueError("truncated central directory")
        (sig, _made, _need, flags, method, _t, _d, crc, csize, usize,
         nlen, xlen, clen, _ds, _ia, _ea, loff) = CENTRAL_HDR.unpack_from(cd, off)
        if sig != SIG_CENTRAL:
            raise ValueError(f"bad central header signature {sig!r}")
        off += CENTRAL_HDR.size
        raw_name = cd[off:off + nlen]
        name = raw_name.decode("utf-8" if flags & FLAG_UTF8 else "cp437")
        off += nlen + xlen + clen
        infos.append(MemberInfo(name=name, method=method, flags=flags, crc32=crc,
                                comp_size=csize, raw_size=usize, header_offset=loff))
    return infos

def read_member_bytes(f, info: MemberInfo) -> bytes:
    f.seek(info.header_offset)
    hdr = f.read(LOCAL_HDR.size)
    if len(hdr) != LOCAL_HDR.size:
        raise ValueError(f"truncated local header for {info.name}")
    sig, *_rest, nlen, xlen = LOCAL_HDR.unpack(hdr)
    if sig != SIG_LOCAL:
        raise ValueError(f"bad local header signature for {info.name}")
    f.seek(nlen + xlen, os.SEEK_CUR)
    comp = f.read(info.comp_size)
    if len(comp) != info.comp_size:
        raise ValueError(f"truncated data for {info.name}")
    raw = decompress_payload(info.method, comp, info.raw_size)
    if len(raw) != info.raw_size:
        raise ValueError(f"size mismatch {info.name}: {len(raw)} != {info.raw_size}")
    c32 = crc32_bytes(raw)
    if c32 != info.crc32:
        raise ValueError(f"CRC mismatch {info.name}: {c32:08x} != {info.crc32:08x}")
    return raw

def verify_archive(path: pathlib.Path, members: Sequence[EncodedMember]) -> None:
    """Read the written archive back and check names, order and content digests."""
    try:
        infos = read_members(path)
        if [i.name for i in infos] != [m.name for m in members]:
            raise VerifyError(path, "member names or order differ from the canonical names")
        with pathlib.Path(path).open("rb") as f:
            for info, m in zip(infos, members):
                raw = read_member_bytes(f, info)
                if content_digest(raw) != m.digest:
                    raise VerifyError(path, f"content digest mismatch for {m.name}")
    except (OSError, ValueError, zlib.error, zstd.ZstdError) as e:
        raise VerifyError(path, str(e)) from e

# -----------------------------
# External 7z
# -----------------------------
def find_7z() -> Optional[str]:
    for c in SEVENZIP_CANDIDATES:
        found = shutil.which(c)
        if found:
            return found
    return None

def require_7z() -> str:
    exe = find_7z()
    if exe is None:
        raise ToolUnavailableError(None, "7z not found (tried: " + ", ".join(SEVENZIP_CANDIDATES) + ")")
    return exe

def run_7z(exe: str, out_path: pathlib.Path, paths: Sequence[pathlib.Path]) -> int:
    """Delegate container writing to 7z; files are passed relative to their directory."""
    out_path = pathlib.Path(out_path)
    cwd = paths[0].parent if paths else out_path.parent
    cmd = [exe, *SEVENZIP_ARGS, str(out_path.resolve()), *[p.name for p in paths]]
    try:
        proc = subprocess.run(cmd, cwd=str(cwd), capture_output=True, text=True)
    except OSError as e:
        raise AssemblyError(out_path, f"cannot run {exe}: {e.strerror or e}") from e
    if proc.returncode != 0:
        out_path.unlink(missing_ok=True)
        err = (proc.stderr or "").strip() or f"{exe} exited with status {proc.returncode}"
        raise AssemblyError(out_path, err)
    return out_path.stat().st_size

# -----------------------------
# Directory pipeline
# -----------------------------
@dataclass
class ArchiveOptions:
    extensions: Tuple[str, ...] = DEF_EXTENSIONS
    policy: Dict[str, str] = field(default_factory=lambda: dict(DEF_POLICY))
    codec: str = CODEC_DEFLATE
    fmt: str = FORMAT_CBZ
    jobs: int = 0
    reproducible: bool = False
    verify: bool = True
    overwrite: bool = False
    recursive: bool = False
    quiet: bool = False
    sevenzip: Optional[str] = None

@dataclass
class ArchiveReport:
    directory: pathlib.Path
    out_path: pathlib.Path
    fmt: str
    sources: List[str]
    names: List[str]
    members: List[EncodedMember]
    raw_sum: int
    archive_bytes: int
    two_phase: bool
    elapsed: float

def list_images(directory: pathlib.Path, extensions: Iterable[str] = DEF_EXTENSIONS) -> List[pathlib.Path]:
    exts = {e.lstrip(".").lower() for e in extensions}
    try:
        entries = list(os.scandir(directory))
    except OSError as e:
        raise InputError(directory, f"cannot list directory: {e.strerror or e}") from e
    out: List[pathlib.Path] = []
    for ent in entries:
        if ent.is_dir():
            continue
        if pathlib.PurePath(ent.name).suffix[1:].lower() in exts:
            out.append(pathlib.Path(ent.path))
    return out

def output_path_for(directory: pathlib.Path, fmt: str) -> pathlib.Path:
    directory = pathlib.Path(directory)
    return directory.parent / f"{directory.name}.{fmt}"

def choose_format(images: Sequence[pathlib.Path], fmt: str) -> str:
    if fmt != FORMAT_AUTO:
        return fmt
    total = 0
    for p in images:
        try:
            total += p.stat().st_size
        except OSError:
            pass
    return FORMAT_CBZ if total > AUTO_CB7_MAX else FORMAT_CB7

def archive_directory(directory: pathlib.Path, options: ArchiveOptions) -> Optional[ArchiveReport]:
    """
    Run the whole pipeline for one directory.

    Returns None when there is nothing to do (no images, or the archive
    already exists). Any CBAError aborts this directory only; pages renamed
    before the failure keep their new names.
    """
    t0 = time.time()
    directory = pathlib.Path(directory)
    if not directory.is_dir():
        raise InputError(directory, "not a directory")

    images = list_images(directory, options.extensions)
    if not images:
        print(f"{directory}: no images, nothing to do")
        return None
    try:
        images = natural_sort(images)
    except NaturalKeyOverflow as e:
        raise InputError(directory, str(e)) from e

    fmt = choose_format(images, options.fmt)
    out_path = output_path_for(directory, fmt)
    if out_path.exists() and not options.overwrite:
        print(f"{out_path}: exists, skipped")
        return None

    print(f"{directory}")
    sources = [p.name for p in images]
    names = canonical_names(images)
    plan = plan_renames(images, names)
    execute_renames(plan)
    paths = plan.targets

    members: List[EncodedMember] = []
    if fmt == FORMAT_CB7:
        if options.sevenzip is None:
            raise ToolUnavailableError(None, "7z is required for cb7 output")
        raw_sum = 0
        for p in paths:
            try:
                raw_sum += p.stat().st_size
            except OSError as e:
                raise EncodeError(p, f"cannot read: {e.strerror or e}") from e
        out_path.unlink(missing_ok=True)
        arc_bytes = run_7z(options.sevenzip, out_path, paths)
    else:
        date_time = reproducible_date_time() if options.reproducible else None
        members = encode_members(paths, names, codec=options.codec, policy=options.policy,
                                 jobs=options.jobs, date_time=date_time, sources=sources)
        raw_sum = sum(m.raw_size for m in members)
        arc_bytes = assemble_archive(out_path, members)
        if options.verify:
            try:
                verify_archive(out_path, members)
            except VerifyError:
                out_path.unlink(missing_ok=True)
                raise

    report = ArchiveReport(
        directory=directory, out_path=out_path, fmt=fmt, sources=sources, names=names,
        members=members, raw_sum=raw_sum, archive_bytes=arc_bytes,
        two_phase=plan.two_phase, elapsed=time.time() - t0,
    )
    print_report(report, quiet=options.quiet)
    return report

def print_report(report: ArchiveReport, *, quiet: bool = False) -> None:
    if not quiet:
        if report.members:
            for m in report.members:
                print(f"  {m.source} -> {m.name}, {m.raw_size} -> {m.stored_size} ({METHOD_NAME[m.method]})")
        else:
            for src, name in zip(report.sources, report.names):
                print(f"  {src} -> {name}")
    ratio = report.archive_bytes / float(report.raw_sum if report.raw_sum else 1)
    print(f"[cba v{TOOL_VERSION}] OK: wrote {report.out_path}")
    print(f"  pages={len(report.names)} raw_sum={report.raw_sum} archive_bytes={report.archive_bytes} ratio={ratio:.4f} time={report.elapsed:.2f}s")
    if report.members:
        counts: Dict[int, int] = {}
        for m in report.members:
            counts[m.method] = counts.get(m.method, 0) + 1
        print("  methods: " + ", ".join(f"{METHOD_NAME[k]}={v}" for k, v in sorted(counts.items())))
    print(f"  rename={'two-phase' if report.two_phase else 'direct'} format={report.fmt}")

def discover_directories(inputs: Sequence[str], recursive: bool = False) -> List[pathlib.Path]:
    """Input directories, plus (recursively) every non-empty subdirectory, parents first."""
    level = [pathlib.Path(x) for x in inputs]
    if not recursive:
        return level
    out: List[pathlib.Path] = []
    seen = set()
    while level:
        nxt: List[pathlib.Path] = []
        for d in level:
            key = os.path.realpath(d)
            if key in seen:
                continue
            seen.add(key)
            try:
                children = sorted(os.scandir(d), key=lambda e: e.name)
            except OSError:
                # reported by archive_directory
                out.append(d)
                continue
            if not children:
                continue
            out.append(d)
            nxt.extend(pathlib.Path(c.path) for c in children if c.is_dir())
        level = nxt
    return out

def run(inputs: Sequence[str], options: ArchiveOptions) -> int:
    if options.fmt in (FORMAT_CB7, FORMAT_AUTO) and options.sevenzip is None:
        options = dataclasses.replace(options, sevenzip=require_7z())

    failed = 0
    for d in discover_directories(inputs, options.recursive):
        try:
            archive_directory(d, options)
        except CBAError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            failed += 1
        print()
    return 1 if failed else 0

# -----------------------------
# Commands
# -----------------------------
def parse_ext_list(text: str) -> Tuple[str, ...]:
    exts = tuple(x.strip().lstrip(".").lower() for x in text.split(",") if x.strip())
    if not exts:
        raise argparse.ArgumentTypeError("empty extension list")
    return exts

def parse_policy_item(text: str) -> Tuple[str, str]:
    ext, sep, effort = text.partition("=")
    effort = effort.strip().lower()
    if not sep or not ext.strip() or effort not in EFFORTS:
        raise argparse.ArgumentTypeError(f"expected EXT={'|'.join(EFFORTS)}, got {text!r}")
    return normalize_extension(ext.strip()), effort

def cmd_archive(args: argparse.Namespace) -> int:
    policy = dict(DEF_POLICY)
    for ext, effort in (args.policy or []):
        policy[ext] = effort
    options = ArchiveOptions(
        extensions=args.ext,
        policy=policy,
        codec=args.codec,
        fmt=args.format,
        jobs=args.jobs,
        reproducible=args.reproducible,
        verify=args.verify,
        overwrite=args.overwrite,
        recursive=args.recursive,
        quiet=args.quiet,
    )
    return run(args.dirs, options)

def cmd_list(args: argparse.Namespace) -> int:
    infos = read_members(pathlib.Path(args.archive))
    print(f"{args.archive}: {len(infos)} member(s)")
    for i in infos:
        print(f"{i.raw_size:12d} {i.comp_size:12d}  {METHOD_NAME.get(i.method, str(i.method)):8s} {i.name}")
    return 0

def cmd_test(args: argparse.Namespace) -> int:
    path = pathlib.Path(args.archive)
    try:
        infos = read_members(path)
        print(f"Testing {path}: {len(infos)} member(s)")
        with path.open("rb") as f:
            for info in infos:
                read_member_bytes(f, info)
    except (ValueError, zlib.error, zstd.ZstdError) as e:
        print(f"FAILED: {e}", file=sys.stderr)
        return 1
    print("OK: all members verified (CRC-32)")
    return 0

def cmd_extract(args: argparse.Namespace) -> int:
    path = pathlib.Path(args.archive)
    outdir = pathlib.Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    root = outdir.resolve()
    infos = read_members(path)
    with path.open("rb") as f:
        for info in infos:
            dest = (outdir / info.name).resolve()
            if root not in dest.parents:
                raise ValueError(f"unsafe member name {info.name!r}")
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(read_member_bytes(f, info))
    print(f"OK: extracted {len(infos)} member(s) to {outdir}")
    return 0

def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="cba", add_help=True)
    ap.add_argument("--version", action="version", version=f"%(prog)s {TOOL_VERSION}")
    sub = ap.add_subparsers(dest="cmd", required=True)

    pa = sub.add_parser("a", help="archive directories of page images")
    pa.add_argument("dirs", nargs="+")
    pa.add_argument("--codec", choices=list(CODECS), default=CODEC_DEFLATE,
                    help="codec for pages worth compressing (zstd members need a zstd-aware reader)")
    pa.add_argument("--format", choices=list(FORMATS), default=FORMAT_CBZ,
                    help="cbz (in-process), cb7 (external 7z) or auto (cb7 up to 16 MiB of pages, cbz above)")
    pa.add_argument("--ext", type=parse_ext_list, default=DEF_EXTENSIONS,
                    help="comma-separated image extensions to pick up")
    pa.add_argument("--policy", type=parse_policy_item, action="append", metavar="EXT=EFFORT",
                    help="override compression effort for an extension (store|normal|max); repeatable")
    pa.add_argument("--jobs", type=int, default=0, help="parallel encode workers (0=auto, 1=off)")
    pa.add_argument("--reproducible", action=argparse.BooleanOptionalAction, default=False,
                    help="stamp members with $SOURCE_DATE_EPOCH (or 1980-01-01) instead of file mtimes")
    pa.add_argument("--verify", action=argparse.BooleanOptionalAction, default=True,
                    help="read the archive back and compare every member with its source (DEFAULT)")
    pa.add_argument("--overwrite", action="store_true", help="rebuild archives that already exist")
    pa.add_argument("--recursive", action="store_true", help="also archive every non-empty subdirectory")
    pa.add_argument("--quiet", action="store_true", help="no per-page lines")
    pa.set_defaults(func=cmd_archive)

    pl = sub.add_parser("l", help="list")
    pl.add_argument("archive")
    pl.set_defaults(func=cmd_list)

    pt = sub.add_parser("t", help="test")
    pt.add_argument("archive")
    pt.set_defaults(func=cmd_test)

    px = sub.add_parser("x", help="extract")
    px.add_argument("archive")
    px.add_argument("outdir")
    px.set_defaults(func=cmd_extract)

    return ap

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    try:
        return args.func(args)
    except ToolUnavailableError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except (OSError, ValueError, zlib.error, zstd.ZstdError) as e:
        print(f"ERROR: {args.cmd}: {e}", file=sys.stderr)
        return 1

if __name__ == "__main__":
    raise SystemExit(main())
