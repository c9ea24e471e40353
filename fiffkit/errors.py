"""Errors raised while reading or writing FIFF files."""

from __future__ import annotations


class FiffError(Exception):
    """Base error for all fiffkit exceptions."""


# ---- Tag-level decode errors ----
class MalformedHeader(FiffError):
    """Raised when a tag header (or the file header) cannot be decoded."""


class InvalidMatrixDims(FiffError):
    """Raised when a matrix trailer disagrees with the payload size."""


class CorruptPayload(FiffError):
    """Raised when a payload length does not fit its declared type."""


class UnsupportedTagType(FiffError):
    """Raised when a tag type has no codec."""


class TruncatedFile(FiffError):
    """Raised when the tag chain leaves the file or never terminates."""


# ---- Structure errors ----
class UnmatchedBlockEnd(FiffError):
    """Raised when a block end tag has no open block of the same kind."""


class UnclosedBlock(FiffError):
    """Raised when a block start tag is never closed."""


class BlockStackMismatch(FiffError):
    """Raised when end_block() is called with a kind that is not open on top."""


class UnclosedBlocks(FiffError):
    """Raised when end_file() is called with blocks still open."""


class DimensionMismatch(FiffError, ValueError):
    """Raised when a matrix, label list or sample buffer has the wrong shape."""


# ---- Measurement / raw data errors ----
class MissingChannelInfo(FiffError):
    """Raised when no measurement info with channel records is found."""


class MissingCalibration(FiffError):
    """Raised when channel count and calibration records disagree."""


class SampleRangeOutOfBounds(FiffError, IndexError):
    """Raised when a requested sample range is outside the recording."""


class IOFailure(FiffError, OSError):
    """Raised when the underlying file cannot be opened, read or written."""


class TagNotFound(FiffError, KeyError):
    """Raised when a required tag or block is not present."""
