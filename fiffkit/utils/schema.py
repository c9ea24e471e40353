"""Pydantic models for the records stored in FIFF measurement headers."""

from __future__ import annotations

import random
import time
import uuid
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from fiffkit.storage.format import (
    CHANNEL_KIND_NAMES,
    FIFFV_COORD_HEAD,
    FIFFV_COORD_UNKNOWN,
    FIFFV_MISC_CH,
    FORMAT_VERSION,
)


def _coerce_tuple(v: Any) -> Any:
    if isinstance(v, np.ndarray):
        return tuple(float(x) for x in v.ravel())
    if isinstance(v, list):
        return tuple(v)
    return v


class FiffId(BaseModel):
    """File or block identifier: version, machine id and a timestamp."""

    model_config = ConfigDict(frozen=True)

    version: int = FORMAT_VERSION
    machid: tuple[int, int] = (0, 0)
    secs: int = 0
    usecs: int = 0

    @field_validator("machid", mode="before")
    @classmethod
    def coerce_machid(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple, np.ndarray)):
            return tuple(int(x) for x in v)
        return v

    @classmethod
    def generate(cls) -> FiffId:
        """Create a fresh id from the wall clock, host address and random bits."""
        now = time.time()
        secs = int(now)
        return cls(
            machid=(uuid.getnode() & 0x7FFFFFFF, random.getrandbits(31)),
            secs=secs,
            usecs=int((now - secs) * 1e6),
        )


class ChannelInfo(BaseModel):
    """Static description of one recorded channel.

    Calibration is kept as two factors: ``range`` (file-wide range setting)
    and ``cal`` (per-channel gain). Stored sample values are multiplied by
    ``range * cal`` to obtain physical units.
    """

    model_config = ConfigDict(frozen=True)

    scanno: int = 0
    logno: int = 0
    kind: int = FIFFV_MISC_CH
    range: float = 1.0
    cal: float = 1.0
    coil_type: int = 0
    loc: tuple[float, ...] = Field(default=(0.0,) * 12)
    unit: int = 0
    unit_mul: int = 0
    ch_name: str = ""

    @field_validator("loc", mode="before")
    @classmethod
    def coerce_loc(cls, v: Any) -> Any:
        return _coerce_tuple(v)

    @field_validator("loc")
    @classmethod
    def check_loc(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if len(v) != 12:
            raise ValueError(f"loc must have 12 elements, got {len(v)}")
        return v

    @field_validator("ch_name")
    @classmethod
    def check_name(cls, v: str) -> str:
        if len(v.encode("utf-8")) > 15:
            raise ValueError(f"Channel name '{v}' is longer than 15 bytes")
        return v

    @property
    def calibration(self) -> float:
        """Effective calibration factor (range × cal)."""
        return self.range * self.cal

    @property
    def kind_name(self) -> str:
        return CHANNEL_KIND_NAMES.get(self.kind, str(self.kind))

    @property
    def position(self) -> np.ndarray:
        return np.asarray(self.loc[:3])

    @property
    def orientation(self) -> np.ndarray:
        """Coil orientation as a 3x3 matrix (ex, ey, ez in rows)."""
        return np.asarray(self.loc[3:]).reshape(3, 3)

    def with_calibration(self, cal: float, range: float = 1.0) -> ChannelInfo:
        return self.model_copy(update={"cal": float(cal), "range": float(range)})


class CoordTrans(BaseModel):
    """Rigid transform between two coordinate frames."""

    model_config = ConfigDict(frozen=True)

    from_frame: int = FIFFV_COORD_UNKNOWN
    to_frame: int = FIFFV_COORD_UNKNOWN
    rot: tuple[float, ...] = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)
    move: tuple[float, ...] = (0.0, 0.0, 0.0)

    @field_validator("rot", "move", mode="before")
    @classmethod
    def coerce_arrays(cls, v: Any) -> Any:
        return _coerce_tuple(v)

    @field_validator("rot")
    @classmethod
    def check_rot(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if len(v) != 9:
            raise ValueError(f"rot must have 9 elements, got {len(v)}")
        return v

    @field_validator("move")
    @classmethod
    def check_move(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if len(v) != 3:
            raise ValueError(f"move must have 3 elements, got {len(v)}")
        return v

    @classmethod
    def from_matrix(cls, from_frame: int, to_frame: int, matrix: np.ndarray) -> CoordTrans:
        m = np.asarray(matrix, dtype=np.float64)
        return cls(from_frame=from_frame, to_frame=to_frame, rot=m[:3, :3], move=m[:3, 3])

    @property
    def matrix(self) -> np.ndarray:
        """4x4 homogeneous transform."""
        m = np.eye(4)
        m[:3, :3] = np.asarray(self.rot).reshape(3, 3)
        m[:3, 3] = self.move
        return m

    def inverse(self) -> CoordTrans:
        return CoordTrans.from_matrix(self.to_frame, self.from_frame, np.linalg.inv(self.matrix))

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Transform an (n, 3) array of points."""
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        m = self.matrix
        return pts @ m[:3, :3].T + m[:3, 3]


class DigPoint(BaseModel):
    """Digitized point (fiducial, HPI coil, EEG electrode or head shape)."""

    model_config = ConfigDict(frozen=True)

    kind: int
    ident: int
    r: tuple[float, ...] = (0.0, 0.0, 0.0)
    coord_frame: int = FIFFV_COORD_HEAD

    @field_validator("r", mode="before")
    @classmethod
    def coerce_r(cls, v: Any) -> Any:
        return _coerce_tuple(v)


class NamedMatrix(BaseModel):
    """Float matrix with row and column labels."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    row_names: list[str] = Field(default_factory=list)
    col_names: list[str] = Field(default_factory=list)
    data: np.ndarray

    @field_validator("data", mode="before")
    @classmethod
    def coerce_data(cls, v: Any) -> np.ndarray:
        return np.atleast_2d(np.asarray(v, dtype=np.float32))

    @field_serializer("data")
    def serialize_data(self, v: np.ndarray) -> list[list[float]]:
        return v.tolist()

    @property
    def nrow(self) -> int:
        return int(self.data.shape[0])

    @property
    def ncol(self) -> int:
        return int(self.data.shape[1])


class Projection(BaseModel):
    """SSP projection operator item."""

    kind: int
    active: bool = False
    desc: str = ""
    data: NamedMatrix


class CtfComp(BaseModel):
    """CTF software gradient compensation matrix."""

    kind: int
    save_calibrated: bool = False
    data: NamedMatrix


class MeasInfo(BaseModel):
    """Measurement header of a recording."""

    file_id: FiffId | None = None
    meas_id: FiffId | None = None
    nchan: int = 0
    sfreq: float = 0.0
    lowpass: float | None = None
    highpass: float | None = None
    meas_date: tuple[int, int] | None = None
    chs: list[ChannelInfo] = Field(default_factory=list)
    dev_head_t: CoordTrans | None = None
    ctf_head_t: CoordTrans | None = None
    dig: list[DigPoint] = Field(default_factory=list)
    bads: list[str] = Field(default_factory=list)
    projs: list[Projection] = Field(default_factory=list)
    comps: list[CtfComp] = Field(default_factory=list)

    @property
    def ch_names(self) -> list[str]:
        return [ch.ch_name for ch in self.chs]

    @property
    def cals(self) -> np.ndarray:
        """Effective per-channel calibration (range × cal)."""
        return np.array([ch.calibration for ch in self.chs], dtype=np.float64)

    def pick_channels(self, sel: list[int]) -> MeasInfo:
        """Return a copy restricted to the given channel indices."""
        chs = [self.chs[k] for k in sel]
        names = {ch.ch_name for ch in chs}
        return self.model_copy(
            update={
                "chs": chs,
                "nchan": len(chs),
                "bads": [b for b in self.bads if b in names],
            }
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> MeasInfo:
        return cls.model_validate_json(data)
