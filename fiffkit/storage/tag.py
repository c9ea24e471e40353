"""Encoding and decoding of single FIFF tags.

Every payload type maps to one entry of a closed codec table. Numeric arrays
decode to numpy, header records decode to the pydantic models in
``fiffkit.utils.schema``.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, NamedTuple

import numpy as np
from pydantic import ValidationError

from fiffkit.errors import (
    CorruptPayload,
    DimensionMismatch,
    InvalidMatrixDims,
    IOFailure,
    MalformedHeader,
    TruncatedFile,
    UnsupportedTagType,
)
from fiffkit.storage.format import (
    FIFFT_CH_INFO_STRUCT,
    FIFFT_COORD_TRANS_STRUCT,
    FIFFT_DAU_PACK16,
    FIFFT_DIG_POINT_STRUCT,
    FIFFT_DIR_ENTRY_STRUCT,
    FIFFT_DOUBLE,
    FIFFT_FLOAT,
    FIFFT_ID_STRUCT,
    FIFFT_INT,
    FIFFT_MATRIX_FLOAT,
    FIFFT_SHORT,
    FIFFT_STRING,
    FIFFT_VOID,
    NEXT_SEQ,
    TAG_HEADER_FORMAT,
    TAG_HEADER_SIZE,
)
from fiffkit.utils.schema import ChannelInfo, CoordTrans, DigPoint, FiffId


@dataclass(slots=True, frozen=True)
class TagHeader:
    kind: int
    type: int
    size: int
    next: int


@dataclass(slots=True, frozen=True)
class DirEntry:
    """Location of one tag in a file; the payload is not loaded."""

    kind: int
    type: int
    pos: int
    size: int


@dataclass(slots=True)
class Tag:
    """One tag with its raw payload. ``value`` decodes on access."""

    kind: int
    type: int
    size: int
    next: int = NEXT_SEQ
    data: bytes = b""

    @property
    def value(self) -> Any:
        return decode_payload(self.type, self.size, self.data)


# ── Header ──────────────────────────────────────────────────


def decode_tag_header(buf: bytes, offset: int = 0) -> TagHeader:
    """Decode the fixed 16-byte header at ``offset``."""
    if len(buf) - offset < TAG_HEADER_SIZE:
        raise MalformedHeader(
            f"Need {TAG_HEADER_SIZE} bytes for a tag header, "
            f"only {max(len(buf) - offset, 0)} available"
        )
    kind, type_, size, next_ = struct.unpack_from(TAG_HEADER_FORMAT, buf, offset)
    if size < 0:
        raise MalformedHeader(f"Negative payload size {size} in tag of kind {kind}")
    return TagHeader(kind=kind, type=type_, size=size, next=next_)


def encode_tag_header(kind: int, type_: int, size: int, next_: int = NEXT_SEQ) -> bytes:
    return struct.pack(TAG_HEADER_FORMAT, kind, type_, size, next_)


# ── Numeric payloads ────────────────────────────────────────


def _numeric_codec(dtype: str) -> tuple[Callable[[bytes], Any], Callable[[Any], bytes]]:
    dt = np.dtype(dtype)

    def decode(data: bytes) -> Any:
        if len(data) % dt.itemsize:
            raise CorruptPayload(
                f"{len(data)} bytes is not a whole number of {dt.itemsize}-byte elements"
            )
        arr = np.frombuffer(data, dtype=dt)
        if arr.size == 1:
            return arr[0].item()
        return arr.astype(dt.newbyteorder("="))

    def encode(value: Any) -> bytes:
        return np.asarray(value, dtype=dt).ravel().tobytes()

    return decode, encode


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptPayload(f"Text payload is not valid UTF-8: {exc}") from exc


def _decode_string(data: bytes) -> str:
    return _decode_text(data)


def _encode_string(value: str) -> bytes:
    return value.encode("utf-8")


def _decode_void(data: bytes) -> None:
    return None


def _encode_void(value: Any) -> bytes:
    return b""


# ── Matrix payloads ─────────────────────────────────────────

_MATRIX_TRAILER = ">ii"


def _decode_matrix(data: bytes) -> np.ndarray:
    size = len(data)
    if size < 8:
        raise InvalidMatrixDims(f"Matrix payload of {size} bytes has no dimension trailer")
    rows, cols = struct.unpack_from(_MATRIX_TRAILER, data, size - 8)
    if rows < 0 or cols < 0 or rows * cols * 4 + 8 != size:
        raise InvalidMatrixDims(
            f"Matrix trailer claims {rows}x{cols} but payload holds {size - 8} data bytes"
        )
    arr = np.frombuffer(data, dtype=">f4", count=rows * cols)
    return arr.reshape(rows, cols).astype(np.float32)


def _encode_matrix(value: Any) -> bytes:
    mat = np.asarray(value, dtype=">f4")
    if mat.ndim != 2:
        raise DimensionMismatch(f"Matrix must be 2-D, got shape {mat.shape}")
    rows, cols = mat.shape
    return np.ascontiguousarray(mat).tobytes() + struct.pack(_MATRIX_TRAILER, rows, cols)


# ── Struct payloads ─────────────────────────────────────────

ID_DTYPE = np.dtype(
    [("version", ">i4"), ("machid", ">i4", (2,)), ("secs", ">i4"), ("usecs", ">i4")]
)
DIR_ENTRY_DTYPE = np.dtype(
    [("kind", ">i4"), ("type", ">i4"), ("size", ">i4"), ("pos", ">i4")]
)
CH_INFO_DTYPE = np.dtype(
    [
        ("scanno", ">i4"),
        ("logno", ">i4"),
        ("kind", ">i4"),
        ("range", ">f4"),
        ("cal", ">f4"),
        ("coil_type", ">i4"),
        ("loc", ">f4", (12,)),
        ("unit", ">i4"),
        ("unit_mul", ">i4"),
        ("ch_name", "S16"),
    ]
)
DIG_POINT_DTYPE = np.dtype([("kind", ">i4"), ("ident", ">i4"), ("r", ">f4", (3,))])
COORD_TRANS_DTYPE = np.dtype(
    [
        ("from", ">i4"),
        ("to", ">i4"),
        ("rot", ">f4", (9,)),
        ("move", ">f4", (3,)),
        ("invrot", ">f4", (9,)),
        ("invmove", ">f4", (3,)),
    ]
)


def _records(data: bytes, dtype: np.dtype) -> np.ndarray:
    if len(data) % dtype.itemsize:
        raise CorruptPayload(
            f"{len(data)} bytes is not a whole number of {dtype.itemsize}-byte records"
        )
    return np.frombuffer(data, dtype=dtype)


def _one_or_many(items: list[Any]) -> Any:
    return items[0] if len(items) == 1 else items


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _decode_id(data: bytes) -> Any:
    return _one_or_many([
        FiffId(
            version=int(r["version"]),
            machid=r["machid"].tolist(),
            secs=int(r["secs"]),
            usecs=int(r["usecs"]),
        )
        for r in _records(data, ID_DTYPE)
    ])


def _encode_id(value: Any) -> bytes:
    ids = _as_list(value)
    out = np.zeros(len(ids), dtype=ID_DTYPE)
    for i, fid in enumerate(ids):
        out[i] = (fid.version, fid.machid, fid.secs, fid.usecs)
    return out.tobytes()


def _decode_dir_entries(data: bytes) -> list[DirEntry]:
    return [
        DirEntry(kind=int(r["kind"]), type=int(r["type"]), pos=int(r["pos"]), size=int(r["size"]))
        for r in _records(data, DIR_ENTRY_DTYPE)
    ]


def _encode_dir_entries(value: Any) -> bytes:
    entries = _as_list(value)
    out = np.zeros(len(entries), dtype=DIR_ENTRY_DTYPE)
    for i, ent in enumerate(entries):
        out[i] = (ent.kind, ent.type, ent.size, ent.pos)
    return out.tobytes()


def _channel_info(r: np.void) -> ChannelInfo:
    try:
        return ChannelInfo(
            scanno=int(r["scanno"]),
            logno=int(r["logno"]),
            kind=int(r["kind"]),
            range=float(r["range"]),
            cal=float(r["cal"]),
            coil_type=int(r["coil_type"]),
            loc=r["loc"].tolist(),
            unit=int(r["unit"]),
            unit_mul=int(r["unit_mul"]),
            # Fixed-width C string; bytes after the first NUL are padding.
            ch_name=_decode_text(bytes(r["ch_name"]).split(b"\0", 1)[0]),
        )
    except ValidationError as exc:
        raise CorruptPayload(f"Invalid channel info record: {exc}") from exc


def _decode_ch_info(data: bytes) -> Any:
    return _one_or_many([_channel_info(r) for r in _records(data, CH_INFO_DTYPE)])


def _encode_ch_info(value: Any) -> bytes:
    chs = _as_list(value)
    out = np.zeros(len(chs), dtype=CH_INFO_DTYPE)
    for i, ch in enumerate(chs):
        out[i] = (
            ch.scanno, ch.logno, ch.kind, ch.range, ch.cal, ch.coil_type,
            ch.loc, ch.unit, ch.unit_mul, ch.ch_name.encode("utf-8"),
        )
    return out.tobytes()


def _decode_dig_point(data: bytes) -> Any:
    return _one_or_many([
        DigPoint(kind=int(r["kind"]), ident=int(r["ident"]), r=r["r"].tolist())
        for r in _records(data, DIG_POINT_DTYPE)
    ])


def _encode_dig_point(value: Any) -> bytes:
    points = _as_list(value)
    out = np.zeros(len(points), dtype=DIG_POINT_DTYPE)
    for i, d in enumerate(points):
        out[i] = (d.kind, d.ident, d.r)
    return out.tobytes()


def _decode_coord_trans(data: bytes) -> Any:
    return _one_or_many([
        CoordTrans(
            from_frame=int(r["from"]),
            to_frame=int(r["to"]),
            rot=r["rot"].tolist(),
            move=r["move"].tolist(),
        )
        for r in _records(data, COORD_TRANS_DTYPE)
    ])


def _encode_coord_trans(value: Any) -> bytes:
    transforms = _as_list(value)
    out = np.zeros(len(transforms), dtype=COORD_TRANS_DTYPE)
    for i, t in enumerate(transforms):
        inv = t.inverse()
        out[i] = (t.from_frame, t.to_frame, t.rot, t.move, inv.rot, inv.move)
    return out.tobytes()


# ── Codec table ─────────────────────────────────────────────


class _Codec(NamedTuple):
    decode: Callable[[bytes], Any]
    encode: Callable[[Any], bytes]


_CODECS: dict[int, _Codec] = {
    FIFFT_VOID: _Codec(_decode_void, _encode_void),
    FIFFT_SHORT: _Codec(*_numeric_codec(">i2")),
    FIFFT_INT: _Codec(*_numeric_codec(">i4")),
    FIFFT_FLOAT: _Codec(*_numeric_codec(">f4")),
    FIFFT_DOUBLE: _Codec(*_numeric_codec(">f8")),
    FIFFT_DAU_PACK16: _Codec(*_numeric_codec(">i2")),
    FIFFT_STRING: _Codec(_decode_string, _encode_string),
    FIFFT_MATRIX_FLOAT: _Codec(_decode_matrix, _encode_matrix),
    FIFFT_ID_STRUCT: _Codec(_decode_id, _encode_id),
    FIFFT_DIR_ENTRY_STRUCT: _Codec(_decode_dir_entries, _encode_dir_entries),
    FIFFT_CH_INFO_STRUCT: _Codec(_decode_ch_info, _encode_ch_info),
    FIFFT_DIG_POINT_STRUCT: _Codec(_decode_dig_point, _encode_dig_point),
    FIFFT_COORD_TRANS_STRUCT: _Codec(_decode_coord_trans, _encode_coord_trans),
}


def _codec(type_: int) -> _Codec:
    try:
        return _CODECS[type_]
    except KeyError:
        raise UnsupportedTagType(f"No codec for tag type {type_:#x}") from None


def decode_payload(type_: int, size: int, data: bytes) -> Any:
    """Decode ``size`` payload bytes according to the tag type."""
    if len(data) != size:
        raise CorruptPayload(f"Tag declares {size} payload bytes, got {len(data)}")
    return _codec(type_).decode(bytes(data))


def encode_payload(type_: int, value: Any) -> bytes:
    return _codec(type_).encode(value)


def encode_tag(kind: int, type_: int, value: Any, next_: int = NEXT_SEQ) -> bytes:
    """Serialize one complete tag (header + payload)."""
    payload = encode_payload(type_, value)
    return encode_tag_header(kind, type_, len(payload), next_) + payload


# ── File access ─────────────────────────────────────────────


def read_tag_header(fid: BinaryIO, pos: int) -> TagHeader:
    try:
        fid.seek(pos)
        raw = fid.read(TAG_HEADER_SIZE)
    except OSError as exc:
        raise IOFailure(f"Cannot read tag header at offset {pos}: {exc}") from exc
    return decode_tag_header(raw)


def read_tag(fid: BinaryIO, pos: int) -> Tag:
    """Read the tag at ``pos`` including its payload."""
    header = read_tag_header(fid, pos)
    try:
        data = fid.read(header.size)
    except OSError as exc:
        raise IOFailure(f"Cannot read tag payload at offset {pos}: {exc}") from exc
    if len(data) != header.size:
        raise TruncatedFile(
            f"Tag at offset {pos} declares {header.size} bytes, file ends after {len(data)}"
        )
    return Tag(kind=header.kind, type=header.type, size=header.size, next=header.next, data=data)
