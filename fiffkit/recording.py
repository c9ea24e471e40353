"""Recording — the main interface for reading and navigating raw .fif files.

Usage:
    from fiffkit import Recording

    r = Recording("sample_raw.fif")

    print(r)                     # Summary
    print(r.channels)            # ['MEG 0113', 'MEG 0112', ..., 'STI 014']
    print(r.num_samples)         # 166800
    print(r[487])                # Dict of all channels at sample 487
    print(r[450:520])            # Dict of arrays over range
    r.channel("EEG 001", 0, 600) # One channel as an array

Sample indices are relative to the first sample of the recording.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, overload

import numpy as np

from fiffkit.raw import RawData, open_raw
from fiffkit.storage.tree import DirTree
from fiffkit.utils.schema import ChannelInfo, CoordTrans, MeasInfo


class Recording:
    """Read and navigate a raw recording.

    Args:
        path: Path to a .fif file with raw data.
        allow_maxshield: Accept unprocessed MaxShield data.
    """

    def __init__(self, path: str | Path, allow_maxshield: bool = False) -> None:
        self._raw: RawData = open_raw(path, allow_maxshield=allow_maxshield)

    def close(self) -> None:
        """Close the underlying file."""
        self._raw.close()

    def __enter__(self) -> Recording:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # --- Properties ---

    @property
    def raw(self) -> RawData:
        return self._raw

    @property
    def info(self) -> MeasInfo:
        """Measurement info (channels, sampling rate, transforms, ...)."""
        return self._raw.info

    @property
    def tree(self) -> DirTree:
        return self._raw.tree

    @property
    def channels(self) -> list[str]:
        """List of channel names."""
        return self._raw.ch_names

    @property
    def channel_infos(self) -> list[ChannelInfo]:
        return list(self.info.chs)

    @property
    def dev_head_t(self) -> CoordTrans | None:
        return self.info.dev_head_t

    @property
    def num_samples(self) -> int:
        return self._raw.n_times

    @property
    def first_samp(self) -> int:
        return self._raw.first_samp

    @property
    def sfreq(self) -> float:
        return self._raw.sfreq

    @property
    def duration(self) -> float:
        """Length of the recording in seconds."""
        return self.num_samples / self.sfreq if self.sfreq else 0.0

    @property
    def name(self) -> str:
        return self._raw.path.stem

    # --- Data Access ---

    def channel_index(self, name: str) -> int:
        try:
            return self.channels.index(name)
        except ValueError:
            raise KeyError(
                f"Channel '{name}' not found. Available: {self.channels}"
            ) from None

    def channel(self, name: str, start: int = 0, end: int | None = None) -> np.ndarray:
        """Get calibrated data for a single channel.

        Args:
            name: Channel name.
            start: Start sample (inclusive). Default 0.
            end: End sample (exclusive). Default None (all samples).

        Returns:
            1-D float64 array.
        """
        if end is None:
            end = self.num_samples
        if end <= start:
            return np.zeros(0)
        idx = self.channel_index(name)
        data = self._raw.read_samples(
            self.first_samp + start, self.first_samp + end - 1, picks=[idx]
        )
        return data[0]

    def times(self, start: int = 0, end: int | None = None) -> np.ndarray:
        """Sample times in seconds for ``start``..``end`` (exclusive)."""
        if end is None:
            end = self.num_samples
        return self._raw.times(self.first_samp + start, self.first_samp + end - 1)

    @overload
    def __getitem__(self, key: int) -> dict[str, float]: ...

    @overload
    def __getitem__(self, key: slice) -> dict[str, np.ndarray]: ...

    def __getitem__(self, key: int | slice) -> dict[str, Any]:
        """Index or slice the recording.

        recording[sample] → dict of all channel values at that sample
        recording[start:end] → dict of all channel arrays over range
        """
        if isinstance(key, int):
            if key < 0:
                key = self.num_samples + key
            first = self.first_samp + key
            data = self._raw.read_samples(first, first)
            return {name: float(v) for name, v in zip(self.channels, data[:, 0])}
        elif isinstance(key, slice):
            data = self._raw[key]
            return dict(zip(self.channels, data))
        else:
            raise TypeError(f"Invalid index type: {type(key)}. Use int or slice.")

    # --- Display ---

    def summary(self) -> str:
        """Generate a human-readable summary string."""
        lines = []
        lines.append(f"Recording: {self.name}")
        lines.append(f"Samples: {self.num_samples} ({self.first_samp}..{self._raw.last_samp})")
        lines.append(f"Sampling rate: {self.sfreq:g} Hz ({self.duration:.2f} s)")
        lines.append(f"Channels: {len(self.channels)}")

        kinds: dict[str, int] = {}
        for ch in self.info.chs:
            kinds[ch.kind_name] = kinds.get(ch.kind_name, 0) + 1
        for kind, count in kinds.items():
            lines.append(f"  {kind}: {count}")

        if self.info.bads:
            lines.append(f"Bad channels: {', '.join(self.info.bads)}")
        if self.info.projs:
            lines.append(f"Projections: {len(self.info.projs)}")
        if self.info.comps:
            lines.append(f"Compensation matrices: {len(self.info.comps)}")
        if self.info.dig:
            lines.append(f"Digitizer points: {len(self.info.dig)}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"Recording(name='{self.name}', samples={self.num_samples}, "
            f"channels={len(self.channels)}, sfreq={self.sfreq:g})"
        )

    def __str__(self) -> str:
        return self.summary()

    def __len__(self) -> int:
        return self.num_samples
