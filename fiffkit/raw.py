"""Streaming access to raw continuous data.

A raw recording is a measurement info block followed by a raw data block
holding a sequence of DATA_BUFFER tags. Each buffer stores ``nsamp`` samples
for every channel, sample-major (all channels of sample 0, then sample 1, ...),
in stored units. Physical values are ``stored × range × cal`` per channel.

Reading never loads the whole recording: open_raw() only indexes the
buffers, read_samples() decodes the buffers that overlap the request.
Writing divides by the calibration and splits incoming blocks into tags no
larger than ``max_buffer_bytes``.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from fiffkit.errors import (
    CorruptPayload,
    DimensionMismatch,
    SampleRangeOutOfBounds,
    TagNotFound,
)
from fiffkit.storage.format import (
    DEFAULT_MAX_BUFFER_BYTES,
    FIFF_BLOCK_ID,
    FIFF_DATA_BUFFER,
    FIFF_DATA_SKIP,
    FIFF_FIRST_SAMPLE,
    FIFF_PARENT_BLOCK_ID,
    FIFFB_MEAS,
    FIFFB_RAW_DATA,
    FIFFB_SMSH_RAW_DATA,
    FIFFT_DAU_PACK16,
    FIFFT_DOUBLE,
    FIFFT_FLOAT,
    FIFFT_INT,
    FIFFT_SHORT,
    RAW_BLOCK_KINDS,
)
from fiffkit.storage.meas_info import read_meas_info, write_meas_info
from fiffkit.storage.reader import FiffReader
from fiffkit.storage.tag import DirEntry
from fiffkit.storage.tree import Block, DirTree
from fiffkit.storage.writer import FiffWriter
from fiffkit.utils.schema import MeasInfo

logger = logging.getLogger(__name__)

# Stored sample types accepted in raw buffers
BUFFER_DTYPES: dict[int, np.dtype] = {
    FIFFT_FLOAT: np.dtype(">f4"),
    FIFFT_DOUBLE: np.dtype(">f8"),
    FIFFT_INT: np.dtype(">i4"),
    FIFFT_SHORT: np.dtype(">i2"),
    FIFFT_DAU_PACK16: np.dtype(">i2"),
}

# Output format name -> (writer method, bytes per value, integer dtype or None)
WRITE_FORMATS: dict[str, tuple[str, int, Any]] = {
    "single": ("write_float", 4, None),
    "double": ("write_double", 8, None),
    "int": ("write_int", 4, np.int32),
    "short": ("write_dau_pack16", 2, np.int16),
}


@dataclass(slots=True, frozen=True)
class RawBuffer:
    """Sample range covered by one data tag. ``entry`` is None for skipped data."""

    first: int
    last: int
    entry: DirEntry | None

    @property
    def nsamp(self) -> int:
        return self.last - self.first + 1


# ── Reading ─────────────────────────────────────────────────


class RawData:
    """Open raw recording. Created by :func:`open_raw`.

    Holds the file open until :meth:`close`. The tree, directory and
    measurement info are read-only.
    """

    def __init__(
        self,
        reader: FiffReader,
        info: MeasInfo,
        raw_block: Block,
        buffers: list[RawBuffer],
        first_samp: int,
    ) -> None:
        self._reader = reader
        self.info = info
        self.raw_block = raw_block
        self.buffers = buffers
        self.first_samp = first_samp
        self.last_samp = buffers[-1].last if buffers else first_samp - 1
        self._starts = [b.first for b in buffers]
        self._cals = info.cals

    def close(self) -> None:
        self._reader.close()

    def __enter__(self) -> RawData:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # --- Properties ---

    @property
    def path(self) -> Path:
        return self._reader.path

    @property
    def tree(self) -> DirTree:
        return self._reader.tree

    @property
    def directory(self) -> list[DirEntry]:
        return self._reader.directory

    @property
    def cals(self) -> np.ndarray:
        """Per-channel calibration (range × cal)."""
        return self._cals.copy()

    @property
    def nchan(self) -> int:
        return len(self.info.chs)

    @property
    def ch_names(self) -> list[str]:
        return self.info.ch_names

    @property
    def sfreq(self) -> float:
        return self.info.sfreq

    @property
    def n_times(self) -> int:
        return self.last_samp - self.first_samp + 1

    def times(self, first: int, last: int) -> np.ndarray:
        """Time in seconds of the samples ``first``..``last`` (absolute indices)."""
        return np.arange(first, last + 1) / self.sfreq

    # --- Data access ---

    def read_samples(
        self, first: int, last: int, picks: Sequence[int] | None = None
    ) -> np.ndarray:
        """Read calibrated samples ``first``..``last`` (inclusive, absolute).

        Args:
            first: First sample index, at least ``first_samp``.
            last: Last sample index, at most ``last_samp``.
            picks: Channel indices to return. None means all.

        Returns:
            float64 array of shape (n_picks, last - first + 1).

        Raises:
            SampleRangeOutOfBounds: The range is empty or outside the recording.
        """
        if not self._reader.is_open:
            raise RuntimeError("Raw data is closed.")
        if first > last or first < self.first_samp or last > self.last_samp:
            raise SampleRangeOutOfBounds(
                f"Samples {first}..{last} requested, recording covers "
                f"{self.first_samp}..{self.last_samp}"
            )
        sel = np.arange(self.nchan) if picks is None else np.asarray(picks, dtype=int)
        if sel.size and (sel.min() < 0 or sel.max() >= self.nchan):
            raise DimensionMismatch(f"Channel picks {list(sel)} outside 0..{self.nchan - 1}")

        out = np.zeros((sel.size, last - first + 1), dtype=np.float64)
        i = max(bisect.bisect_right(self._starts, first) - 1, 0)
        while i < len(self.buffers) and self.buffers[i].first <= last:
            buf = self.buffers[i]
            i += 1
            if buf.entry is None:
                continue
            lo = max(first, buf.first)
            hi = min(last, buf.last)
            data = self._read_buffer(buf)
            out[:, lo - first:hi - first + 1] = data[sel, lo - buf.first:hi - buf.first + 1]

        out *= self._cals[sel][:, np.newaxis]
        return out

    def _read_buffer(self, buf: RawBuffer) -> np.ndarray:
        tag = self._reader.read_tag(buf.entry)
        arr = np.frombuffer(tag.data, dtype=BUFFER_DTYPES[tag.type])
        return arr.reshape(buf.nsamp, self.nchan).T

    def __getitem__(self, key: slice) -> np.ndarray:
        """raw[a:b] → calibrated samples a..b-1, relative to first_samp."""
        if not isinstance(key, slice):
            raise TypeError(f"Invalid index type: {type(key)}. Use a slice.")
        start, stop, step = key.indices(self.n_times)
        if step != 1:
            raise ValueError("Only contiguous slices are supported")
        if stop <= start:
            return np.zeros((self.nchan, 0))
        return self.read_samples(self.first_samp + start, self.first_samp + stop - 1)

    def __len__(self) -> int:
        return self.n_times

    def __repr__(self) -> str:
        return (
            f"RawData(path='{self.path}', nchan={self.nchan}, "
            f"samples={self.first_samp}..{self.last_samp}, sfreq={self.sfreq})"
        )


def _find_raw_block(tree: DirTree, meas: Block, allow_maxshield: bool) -> Block:
    for kind in RAW_BLOCK_KINDS:
        block = tree.find_block(kind, meas)
        if block is not None:
            return block
    smsh = tree.find_block(FIFFB_SMSH_RAW_DATA, meas)
    if smsh is not None:
        if allow_maxshield:
            return smsh
        raise TagNotFound(
            "Only unprocessed MaxShield raw data found; pass allow_maxshield=True to read it"
        )
    raise TagNotFound("No raw data block in the measurement")


def _scan_buffers(
    reader: FiffReader, raw_block: Block, nchan: int
) -> tuple[list[RawBuffer], int]:
    first_samp = 0
    buffers: list[RawBuffer] = []
    pos = None
    nskip = 0

    for ent in reader.tree.entries(raw_block):
        if ent.kind == FIFF_FIRST_SAMPLE:
            if pos is None:
                first_samp = int(reader.read_value(ent))
        elif ent.kind == FIFF_DATA_SKIP:
            nskip = int(reader.read_value(ent))
        elif ent.kind == FIFF_DATA_BUFFER:
            if pos is None:
                pos = first_samp
            dtype = BUFFER_DTYPES.get(ent.type)
            if dtype is None:
                raise CorruptPayload(f"Raw buffer at offset {ent.pos} has type {ent.type:#x}")
            if ent.size % (dtype.itemsize * nchan):
                raise CorruptPayload(
                    f"Raw buffer at offset {ent.pos} holds {ent.size} bytes, "
                    f"not a whole number of {nchan}-channel samples"
                )
            nsamp = ent.size // (dtype.itemsize * nchan)
            if nsamp == 0:
                continue
            if nskip > 0:
                buffers.append(RawBuffer(first=pos, last=pos + nskip * nsamp - 1, entry=None))
                pos += nskip * nsamp
                nskip = 0
            buffers.append(RawBuffer(first=pos, last=pos + nsamp - 1, entry=ent))
            pos += nsamp

    return buffers, first_samp


def open_raw(path: str | Path, allow_maxshield: bool = False, use_index: bool = True) -> RawData:
    """Open a raw data file for random-access reading.

    Args:
        path: Path to the .fif file.
        allow_maxshield: Accept unprocessed MaxShield raw data.
        use_index: Use the file's tag index when present.

    Raises:
        MissingChannelInfo: No channel records found.
        MissingCalibration: Channel count and channel records disagree.
        TagNotFound: No raw data block.
    """
    reader = FiffReader(path, use_index=use_index)
    reader.open()
    try:
        info, meas = read_meas_info(reader)
        raw_block = _find_raw_block(reader.tree, meas, allow_maxshield)
        buffers, first_samp = _scan_buffers(reader, raw_block, info.nchan)
    except BaseException:
        reader.close()
        raise

    raw = RawData(reader, info, raw_block, buffers, first_samp)
    logger.debug(
        "Opened raw %s: %d channels, %d buffers, samples %d..%d",
        path, raw.nchan, len(buffers), raw.first_samp, raw.last_samp,
    )
    return raw


# ── Writing ─────────────────────────────────────────────────


class RawWriter:
    """Appends calibrated sample blocks to a new raw data file.

    Usage:
        with start_writing_raw("out.fif", info) as w:
            w.write_raw_buffer(samples)          # (nchan, nsamp)
                                                 # finish_writing_raw() on clean exit

    Args:
        path: Output path.
        info: Measurement info of the source recording.
        sel: Indices of the channels to write. None means all.
        calibration: Per-channel ``cal`` override for the selected channels;
            the channel ``range`` is then set to 1.0.
        first_sample: Absolute index of the first written sample.
        max_buffer_bytes: Upper bound on the payload of one data tag.
        fmt: Stored sample format: "single", "double", "int" or "short".
    """

    def __init__(
        self,
        path: str | Path,
        info: MeasInfo,
        sel: Sequence[int] | None = None,
        calibration: Sequence[float] | np.ndarray | None = None,
        first_sample: int = 0,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        fmt: str = "single",
        write_directory: bool = True,
    ) -> None:
        if fmt not in WRITE_FORMATS:
            raise ValueError(f"Unknown raw format '{fmt}'. Use one of {list(WRITE_FORMATS)}")
        if max_buffer_bytes <= 0:
            raise ValueError("max_buffer_bytes must be positive")

        sel = list(range(len(info.chs))) if sel is None else [int(k) for k in sel]
        for k in sel:
            if k < 0 or k >= len(info.chs):
                raise DimensionMismatch(f"Channel index {k} outside 0..{len(info.chs) - 1}")

        chs = [info.chs[k] for k in sel]
        if calibration is not None:
            cal = np.asarray(calibration, dtype=np.float64).ravel()
            if cal.size != len(chs):
                raise DimensionMismatch(
                    f"{cal.size} calibration factors for {len(chs)} channels"
                )
            chs = [ch.with_calibration(c) for ch, c in zip(chs, cal)]
        chs = [ch.model_copy(update={"scanno": k + 1}) for k, ch in enumerate(chs)]

        self.path = Path(path)
        self.info = info.pick_channels(sel).model_copy(update={"chs": chs})
        self.first_sample = first_sample
        self.max_buffer_bytes = max_buffer_bytes
        self.fmt = fmt

        # Match the float32 precision the factors are stored with.
        self._cals = self.info.cals.astype(np.float32).astype(np.float64)
        if np.any(self._cals == 0):
            raise DimensionMismatch("Calibration factors must be non-zero")
        self._writer = FiffWriter(self.path, write_directory=write_directory)
        self._samples_written = 0
        self._started = False

    def start(self) -> None:
        """Write the file header, measurement info and open the raw data block."""
        if self._started:
            raise RuntimeError("Raw writing already started.")
        self._started = True
        w = self._writer
        w.start_file()
        try:
            w.start_block(FIFFB_MEAS)
            w.write_id(FIFF_BLOCK_ID)
            if self.info.meas_id is not None:
                w.write_id(FIFF_PARENT_BLOCK_ID, self.info.meas_id)
            write_meas_info(w, self.info)
            w.start_block(FIFFB_RAW_DATA)
            w.write_int(FIFF_FIRST_SAMPLE, self.first_sample)
        except BaseException:
            w.close()
            raise
        logger.debug("Started raw file %s with %d channels", self.path, self.nchan)

    @property
    def cals(self) -> np.ndarray:
        return self._cals.copy()

    @property
    def nchan(self) -> int:
        return len(self.info.chs)

    @property
    def samples_written(self) -> int:
        return self._samples_written

    @property
    def chunk_samples(self) -> int:
        """Samples per data tag given ``max_buffer_bytes``."""
        width = WRITE_FORMATS[self.fmt][1]
        return max(1, self.max_buffer_bytes // (width * max(self.nchan, 1)))

    def write_raw_buffer(self, samples: np.ndarray) -> None:
        """Append a (nchan, nsamp) block of physical values.

        Raises:
            DimensionMismatch: The row count differs from the channel count.
        """
        if not self._writer.is_open:
            raise RuntimeError("Raw writer not started or already closed.")
        data = np.asarray(samples, dtype=np.float64)
        if data.ndim != 2 or data.shape[0] != self.nchan:
            raise DimensionMismatch(
                f"Expected a ({self.nchan}, nsamp) buffer, got shape {data.shape}"
            )

        method, _, int_dtype = WRITE_FORMATS[self.fmt]
        write = getattr(self._writer, method)
        step = self.chunk_samples
        for start in range(0, data.shape[1], step):
            chunk = data[:, start:start + step] / self._cals[:, np.newaxis]
            if int_dtype is not None:
                lim = np.iinfo(int_dtype)
                chunk = np.clip(np.round(chunk), lim.min, lim.max).astype(int_dtype)
            write(FIFF_DATA_BUFFER, np.ascontiguousarray(chunk.T))
        self._samples_written += data.shape[1]

    def finish_writing_raw(self) -> None:
        """Close the raw data and measurement blocks and end the file."""
        self._writer.end_block(FIFFB_RAW_DATA)
        self._writer.end_block(FIFFB_MEAS)
        self._writer.end_file()
        logger.debug("Wrote %d samples to %s", self._samples_written, self.path)

    def close(self) -> None:
        """Release the file without finishing it."""
        self._writer.close()

    def __enter__(self) -> RawWriter:
        if not self._started:
            self.start()
        return self

    def __exit__(self, exc_type: Any, *args: Any) -> None:
        if exc_type is not None or self._writer.finished:
            self.close()
        else:
            self.finish_writing_raw()

    def __repr__(self) -> str:
        return (
            f"RawWriter(path='{self.path}', nchan={self.nchan}, "
            f"samples_written={self._samples_written})"
        )


def start_writing_raw(
    path: str | Path,
    info: MeasInfo,
    sel: Sequence[int] | None = None,
    calibration: Sequence[float] | np.ndarray | None = None,
    **kwargs: Any,
) -> RawWriter:
    """Create a raw data file and return a started :class:`RawWriter`."""
    writer = RawWriter(path, info, sel=sel, calibration=calibration, **kwargs)
    writer.start()
    return writer
