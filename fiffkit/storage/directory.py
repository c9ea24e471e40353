"""Tag directory: a flat, ordered index of every tag in a file.

Two ways to obtain it:

    index  — the DIR_POINTER tag at the start of the file points at a DIR
             tag holding the complete list of entries; one seek.
    walk   — follow the tag chain from offset 0 reading only headers,
             until the tag whose ``next`` is NEXT_NONE.

Files without an index (pointer is -1) are walked.
"""

from __future__ import annotations

import logging
import os
from typing import BinaryIO

from fiffkit.errors import IOFailure, MalformedHeader, TruncatedFile
from fiffkit.storage.format import (
    FIFF_DIR,
    FIFF_DIR_POINTER,
    FIFF_FILE_ID,
    FIFFT_DIR_ENTRY_STRUCT,
    FIFFT_INT,
    NEXT_NONE,
    NEXT_SEQ,
    TAG_HEADER_SIZE,
)
from fiffkit.storage.tag import DirEntry, TagHeader, read_tag, read_tag_header

logger = logging.getLogger(__name__)

__all__ = ["DirEntry", "build_directory", "read_directory", "walk_directory"]


def file_size(fid: BinaryIO) -> int:
    try:
        return fid.seek(0, os.SEEK_END)
    except OSError as exc:
        raise IOFailure(f"Cannot determine file size: {exc}") from exc


def _next_pos(pos: int, header: TagHeader) -> int:
    if header.next == NEXT_SEQ:
        return pos + TAG_HEADER_SIZE + header.size
    return header.next


def _checked_header(fid: BinaryIO, pos: int, size: int) -> TagHeader:
    if pos < 0 or pos + TAG_HEADER_SIZE > size:
        raise TruncatedFile(f"Tag chain points to offset {pos}, outside the {size}-byte file")
    header = read_tag_header(fid, pos)
    if pos + TAG_HEADER_SIZE + header.size > size:
        raise TruncatedFile(
            f"Tag of kind {header.kind} at offset {pos} declares {header.size} bytes "
            f"past the end of the file"
        )
    return header


def walk_directory(fid: BinaryIO, size: int | None = None) -> list[DirEntry]:
    """Build the directory by following the tag chain header by header."""
    if size is None:
        size = file_size(fid)

    entries: list[DirEntry] = []
    visited: set[int] = set()
    pos = 0
    while True:
        if pos in visited:
            raise TruncatedFile(f"Tag chain loops back to offset {pos}")
        visited.add(pos)

        header = _checked_header(fid, pos, size)
        entries.append(DirEntry(kind=header.kind, type=header.type, pos=pos, size=header.size))
        if header.next == NEXT_NONE:
            break
        pos = _next_pos(pos, header)

    logger.debug("Walked %d tags", len(entries))
    return entries


def read_directory(fid: BinaryIO, dir_pos: int, size: int | None = None) -> list[DirEntry] | None:
    """Decode the DIR tag at ``dir_pos``.

    Returns None when ``dir_pos`` does not hold a usable index.
    """
    if size is None:
        size = file_size(fid)
    if dir_pos + TAG_HEADER_SIZE > size:
        logger.warning("Directory pointer %d is outside the file, ignoring index", dir_pos)
        return None

    tag = read_tag(fid, dir_pos)
    if tag.kind != FIFF_DIR or tag.type != FIFFT_DIR_ENTRY_STRUCT:
        logger.warning("Directory pointer %d does not reference a directory tag", dir_pos)
        return None

    entries = tag.value
    for ent in entries:
        if ent.pos < 0 or ent.pos + TAG_HEADER_SIZE + ent.size > size:
            raise TruncatedFile(
                f"Directory entry for kind {ent.kind} at offset {ent.pos} lies outside the file"
            )
    logger.debug("Read %d directory entries from index at %d", len(entries), dir_pos)
    return entries


def _directory_pointer(fid: BinaryIO, first: TagHeader, size: int) -> int:
    pos = _next_pos(0, first)
    if pos < 0 or pos + TAG_HEADER_SIZE > size:
        return -1
    header = read_tag_header(fid, pos)
    if header.kind != FIFF_DIR_POINTER or header.type != FIFFT_INT or header.size != 4:
        return -1
    return read_tag(fid, pos).value


def build_directory(fid: BinaryIO, use_index: bool = True) -> list[DirEntry]:
    """Return the ordered directory of ``fid``.

    Args:
        fid: Binary file object open for reading.
        use_index: Use the pre-built index when the file has one.

    Raises:
        MalformedHeader: The file does not start with a file id tag.
        TruncatedFile: The tag chain leaves the file or never terminates.
    """
    size = file_size(fid)
    if size < TAG_HEADER_SIZE:
        raise MalformedHeader(f"File of {size} bytes is too short to hold a tag")

    first = _checked_header(fid, 0, size)
    if first.kind != FIFF_FILE_ID:
        raise MalformedHeader(f"File does not start with a file id tag (kind {first.kind})")

    if use_index:
        dir_pos = _directory_pointer(fid, first, size)
        if dir_pos > 0:
            entries = read_directory(fid, dir_pos, size)
            if entries is not None:
                return entries

    return walk_directory(fid, size)
