"""fiffkit — read and write FIFF biosignal recordings.

Tag-level access to .fif files (directory, block tree, typed tag values),
measurement header decoding, and streaming raw continuous data.

Quick start:
    from fiffkit import Recording, open_raw, start_writing_raw

    # Navigate
    r = Recording("sample_raw.fif")
    print(r)                     # Summary
    print(r[100:200])            # Calibrated samples per channel

    # Stream
    raw = open_raw("sample_raw.fif")
    data = raw.read_samples(raw.first_samp, raw.first_samp + 999)

    # Copy a subset of channels
    with start_writing_raw("subset_raw.fif", raw.info, sel=[0, 1, 2]) as w:
        w.write_raw_buffer(data[:3])

    # Tag level
    from fiffkit import open_fiff
    with open_fiff("sample_raw.fif") as f:
        for depth, block in f.tree.walk():
            print("  " * depth, block.name)
"""

__version__ = "0.1.0"

from fiffkit.raw import RawData, RawWriter, open_raw, start_writing_raw
from fiffkit.recording import Recording
from fiffkit.storage.reader import FiffReader, open_fiff
from fiffkit.storage.writer import FiffWriter, start_file

__all__ = [
    "FiffReader",
    "FiffWriter",
    "RawData",
    "RawWriter",
    "Recording",
    "open_fiff",
    "open_raw",
    "start_file",
    "start_writing_raw",
    "__version__",
]
