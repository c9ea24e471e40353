"""Sequential writer for .fif files.

Tags are appended in order. Block nesting is tracked on a stack so that
end_block() and end_file() can refuse malformed structure. The index of
every written tag is kept so end_file() can store a directory for one-seek
opening.

A writer that is closed without end_file() leaves the file without its
terminal tag; reading it back fails with TruncatedFile.
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import Any, BinaryIO, Sequence

import numpy as np

from fiffkit.errors import BlockStackMismatch, DimensionMismatch, IOFailure, UnclosedBlocks
from fiffkit.storage.format import (
    FIFF_BLOCK_END,
    FIFF_BLOCK_START,
    FIFF_CH_INFO,
    FIFF_COORD_TRANS,
    FIFF_DESCRIPTION,
    FIFF_DIG_POINT,
    FIFF_DIR,
    FIFF_DIR_POINTER,
    FIFF_FILE_ID,
    FIFF_FREE_LIST,
    FIFF_MNE_CH_NAME_LIST,
    FIFF_MNE_COL_NAMES,
    FIFF_MNE_CTF_COMP_CALIBRATED,
    FIFF_MNE_CTF_COMP_DATA,
    FIFF_MNE_CTF_COMP_KIND,
    FIFF_MNE_NCOL,
    FIFF_MNE_NROW,
    FIFF_MNE_PROJ_ITEM_ACTIVE,
    FIFF_MNE_ROW_NAMES,
    FIFF_NCHAN,
    FIFF_NOP,
    FIFF_PROJ_ITEM_CH_NAME_LIST,
    FIFF_PROJ_ITEM_KIND,
    FIFF_PROJ_ITEM_NVEC,
    FIFF_PROJ_ITEM_VECTORS,
    FIFFB_ISOTRAK,
    FIFFB_MNE_BAD_CHANNELS,
    FIFFB_MNE_CTF_COMP,
    FIFFB_MNE_CTF_COMP_DATA,
    FIFFB_MNE_NAMED_MATRIX,
    FIFFB_PROJ,
    FIFFB_PROJ_ITEM,
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
    FIFFT_STRING,
    FIFFT_VOID,
    NEXT_NONE,
    NEXT_SEQ,
    TAG_HEADER_SIZE,
)
from fiffkit.storage.tag import DIR_ENTRY_DTYPE, DirEntry, encode_payload, encode_tag_header
from fiffkit.utils.schema import (
    ChannelInfo,
    CoordTrans,
    CtfComp,
    DigPoint,
    FiffId,
    NamedMatrix,
    Projection,
)

logger = logging.getLogger(__name__)


class FiffWriter:
    """Writes a .fif file tag by tag.

    Usage:
        with FiffWriter("out.fif") as w:      # start_file() on enter
            w.start_block(FIFFB_MEAS)
            w.write_int(FIFF_NCHAN, 3)
            w.end_block(FIFFB_MEAS)
                                              # end_file() on clean exit

    Args:
        path: Output path. Parent directories are created.
        write_directory: Store a tag index at the end of the file.
    """

    def __init__(self, path: str | Path, write_directory: bool = True) -> None:
        self.path = Path(path)
        self.write_directory = write_directory

        self._fid: BinaryIO | None = None
        self._blocks: list[int] = []
        self._entries: list[DirEntry] = []
        self._pos = 0
        self._dir_pointer_pos: int | None = None
        self._finished = False

    # --- File lifecycle ---

    def start_file(self, file_id: FiffId | None = None) -> None:
        """Open the output and write the file id, directory pointer and free list."""
        if self._fid is not None or self._finished:
            raise RuntimeError("File already started.")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fid = open(self.path, "wb")
        except OSError as exc:
            raise IOFailure(f"Cannot create {self.path}: {exc}") from exc

        try:
            self.write_id(FIFF_FILE_ID, file_id)
            self._dir_pointer_pos = self._pos + TAG_HEADER_SIZE
            self.write_int(FIFF_DIR_POINTER, -1)
            self.write_int(FIFF_FREE_LIST, -1)
        except BaseException:
            self.close()
            raise
        logger.debug("Started %s", self.path)

    def end_file(self) -> None:
        """Write the directory and terminal tag, then close the file.

        Raises:
            UnclosedBlocks: Blocks are still open.
        """
        fid = self._require_open()
        if self._blocks:
            raise UnclosedBlocks(
                f"Cannot end file with {len(self._blocks)} open block(s): {self._blocks}"
            )

        if self.write_directory:
            self._write_directory()
        else:
            self._write_tag(FIFF_NOP, FIFFT_VOID, None, next_=NEXT_NONE)

        try:
            fid.flush()
        except OSError as exc:
            raise IOFailure(f"Cannot flush {self.path}: {exc}") from exc
        self._finished = True
        self.close()
        logger.debug("Finished %s (%d tags, %d bytes)", self.path, len(self._entries), self._pos)

    def close(self) -> None:
        """Release the file handle. Without end_file() the file stays non-terminated."""
        if self._fid is None:
            return
        if not self._finished:
            logger.warning("Closing %s without end_file(); the file is incomplete", self.path)
        self._fid.close()
        self._fid = None

    def __enter__(self) -> FiffWriter:
        if self._fid is None:
            self.start_file()
        return self

    def __exit__(self, exc_type: Any, *args: Any) -> None:
        if exc_type is not None or self._finished:
            self.close()
        else:
            self.end_file()

    @property
    def is_open(self) -> bool:
        return self._fid is not None

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def position(self) -> int:
        """Byte offset of the next tag."""
        return self._pos

    @property
    def open_blocks(self) -> list[int]:
        return list(self._blocks)

    # --- Blocks ---

    def start_block(self, kind: int) -> None:
        self.write_int(FIFF_BLOCK_START, kind)
        self._blocks.append(kind)

    def end_block(self, kind: int) -> None:
        if not self._blocks or self._blocks[-1] != kind:
            top = self._blocks[-1] if self._blocks else None
            raise BlockStackMismatch(f"Cannot end block {kind}, innermost open block is {top}")
        self.write_int(FIFF_BLOCK_END, kind)
        self._blocks.pop()

    # --- Scalars and strings ---

    def write_int(self, kind: int, data: int | Sequence[int] | np.ndarray) -> None:
        self._write_tag(kind, FIFFT_INT, data)

    def write_float(self, kind: int, data: float | Sequence[float] | np.ndarray) -> None:
        self._write_tag(kind, FIFFT_FLOAT, data)

    def write_double(self, kind: int, data: float | Sequence[float] | np.ndarray) -> None:
        self._write_tag(kind, FIFFT_DOUBLE, data)

    def write_dau_pack16(self, kind: int, data: int | Sequence[int] | np.ndarray) -> None:
        """Write 16-bit integers (used for compact raw buffers)."""
        self._write_tag(kind, FIFFT_DAU_PACK16, data)

    def write_string(self, kind: int, data: str) -> None:
        self._write_tag(kind, FIFFT_STRING, data)

    def write_id(self, kind: int, file_id: FiffId | None = None) -> None:
        """Write an id tag, generating a fresh id when none is given."""
        self._write_tag(kind, FIFFT_ID_STRUCT, file_id or FiffId.generate())

    def write_name_list(self, kind: int, names: Sequence[str]) -> None:
        """Write names as one colon-separated string."""
        for name in names:
            if ":" in name:
                raise ValueError(f"Name '{name}' contains the list separator ':'")
        self.write_string(kind, ":".join(names))

    # --- Matrices ---

    def write_float_matrix(self, kind: int, mat: np.ndarray) -> None:
        """Write a 2-D float32 matrix (row-major data, then rows and cols)."""
        arr = np.asarray(mat)
        if arr.ndim != 2:
            raise DimensionMismatch(f"Matrix must be 2-D, got shape {arr.shape}")
        self._write_tag(kind, FIFFT_MATRIX_FLOAT, arr)

    def write_named_matrix(self, kind: int, mat: NamedMatrix) -> None:
        """Write a matrix with its row and column labels in a named-matrix block.

        Empty label lists are allowed and omitted from the file.
        """
        nrow, ncol = mat.data.shape
        if mat.row_names and len(mat.row_names) != nrow:
            raise DimensionMismatch(
                f"{len(mat.row_names)} row names for a matrix with {nrow} rows"
            )
        if mat.col_names and len(mat.col_names) != ncol:
            raise DimensionMismatch(
                f"{len(mat.col_names)} column names for a matrix with {ncol} columns"
            )

        self.start_block(FIFFB_MNE_NAMED_MATRIX)
        self.write_int(FIFF_MNE_NROW, nrow)
        self.write_int(FIFF_MNE_NCOL, ncol)
        if mat.row_names:
            self.write_name_list(FIFF_MNE_ROW_NAMES, mat.row_names)
        if mat.col_names:
            self.write_name_list(FIFF_MNE_COL_NAMES, mat.col_names)
        self.write_float_matrix(kind, mat.data)
        self.end_block(FIFFB_MNE_NAMED_MATRIX)

    # --- Header records ---

    def write_ch_info(self, ch: ChannelInfo) -> None:
        self._write_tag(FIFF_CH_INFO, FIFFT_CH_INFO_STRUCT, ch)

    def write_coord_trans(self, trans: CoordTrans) -> None:
        """Write a transform; its inverse is stored alongside."""
        self._write_tag(FIFF_COORD_TRANS, FIFFT_COORD_TRANS_STRUCT, trans)

    def write_dig_point(self, dig: DigPoint) -> None:
        self._write_tag(FIFF_DIG_POINT, FIFFT_DIG_POINT_STRUCT, dig)

    def write_dig_points(self, dig: Sequence[DigPoint]) -> None:
        """Write digitizer points inside an isotrak block."""
        if not dig:
            return
        self.start_block(FIFFB_ISOTRAK)
        for d in dig:
            self.write_dig_point(d)
        self.end_block(FIFFB_ISOTRAK)

    def write_bad_channels(self, bads: Sequence[str]) -> None:
        if not bads:
            return
        self.start_block(FIFFB_MNE_BAD_CHANNELS)
        self.write_name_list(FIFF_MNE_CH_NAME_LIST, bads)
        self.end_block(FIFFB_MNE_BAD_CHANNELS)

    def write_proj(self, projs: Sequence[Projection]) -> None:
        """Write SSP projection items inside a projection block."""
        if not projs:
            return
        self.start_block(FIFFB_PROJ)
        for proj in projs:
            self.start_block(FIFFB_PROJ_ITEM)
            self.write_string(FIFF_DESCRIPTION, proj.desc)
            self.write_int(FIFF_PROJ_ITEM_KIND, proj.kind)
            self.write_int(FIFF_NCHAN, proj.data.ncol)
            self.write_int(FIFF_PROJ_ITEM_NVEC, proj.data.nrow)
            self.write_int(FIFF_MNE_PROJ_ITEM_ACTIVE, int(proj.active))
            self.write_name_list(FIFF_PROJ_ITEM_CH_NAME_LIST, proj.data.col_names)
            self.write_float_matrix(FIFF_PROJ_ITEM_VECTORS, proj.data.data)
            self.end_block(FIFFB_PROJ_ITEM)
        self.end_block(FIFFB_PROJ)

    def write_ctf_comp(self, comps: Sequence[CtfComp]) -> None:
        """Write CTF compensation matrices inside a compensation block."""
        if not comps:
            return
        self.start_block(FIFFB_MNE_CTF_COMP)
        for comp in comps:
            self.start_block(FIFFB_MNE_CTF_COMP_DATA)
            self.write_int(FIFF_MNE_CTF_COMP_KIND, comp.kind)
            self.write_int(FIFF_MNE_CTF_COMP_CALIBRATED, int(comp.save_calibrated))
            self.write_named_matrix(FIFF_MNE_CTF_COMP_DATA, comp.data)
            self.end_block(FIFFB_MNE_CTF_COMP_DATA)
        self.end_block(FIFFB_MNE_CTF_COMP)

    # --- Internals ---

    def _require_open(self) -> BinaryIO:
        if self._fid is None:
            raise RuntimeError("Writer not opened. Call .start_file() first.")
        return self._fid

    def _write_bytes(self, data: bytes) -> None:
        fid = self._require_open()
        try:
            fid.write(data)
        except OSError as exc:
            raise IOFailure(f"Cannot write to {self.path}: {exc}") from exc
        self._pos += len(data)

    def _write_tag(self, kind: int, type_: int, value: Any, next_: int = NEXT_SEQ) -> None:
        self._require_open()
        payload = encode_payload(type_, value)
        pos = self._pos
        self._write_bytes(encode_tag_header(kind, type_, len(payload), next_) + payload)
        self._entries.append(DirEntry(kind=kind, type=type_, pos=pos, size=len(payload)))

    def _write_directory(self) -> None:
        # The index covers every tag including itself and the terminal NOP.
        dir_pos = self._pos
        dir_size = (len(self._entries) + 2) * DIR_ENTRY_DTYPE.itemsize
        entries = self._entries + [
            DirEntry(kind=FIFF_DIR, type=FIFFT_DIR_ENTRY_STRUCT, pos=dir_pos, size=dir_size),
            DirEntry(kind=FIFF_NOP, type=FIFFT_VOID, pos=dir_pos + TAG_HEADER_SIZE + dir_size, size=0),
        ]
        self._write_tag(FIFF_DIR, FIFFT_DIR_ENTRY_STRUCT, entries)
        self._write_tag(FIFF_NOP, FIFFT_VOID, None, next_=NEXT_NONE)

        fid = self._require_open()
        try:
            fid.seek(self._dir_pointer_pos)
            fid.write(struct.pack(">i", dir_pos))
            fid.seek(0, 2)
        except OSError as exc:
            raise IOFailure(f"Cannot update directory pointer in {self.path}: {exc}") from exc


def start_file(path: str | Path, write_directory: bool = True) -> FiffWriter:
    """Create a .fif file, write its header tags and return the writer."""
    writer = FiffWriter(path, write_directory=write_directory)
    writer.start_file()
    return writer
