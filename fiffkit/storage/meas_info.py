"""Reading and writing the measurement info block.

Layout written by write_meas_info():

    MEAS_INFO
        ISOTRAK            digitizer points
        PROJ               SSP projection items
        MNE_CTF_COMP       compensation matrices
        MNE_BAD_CHANNELS   bad channel names
        SFREQ, HIGHPASS, LOWPASS, NCHAN, MEAS_DATE
        COORD_TRANS        device→head, ctf head→head
        CH_INFO            one per channel
"""

from __future__ import annotations

from typing import Any

import numpy as np

from fiffkit.errors import DimensionMismatch, MissingCalibration, MissingChannelInfo, TagNotFound
from fiffkit.storage.format import (
    FIFF_BLOCK_ID,
    FIFF_CH_INFO,
    FIFF_COORD_TRANS,
    FIFF_DESCRIPTION,
    FIFF_DIG_POINT,
    FIFF_HIGHPASS,
    FIFF_LOWPASS,
    FIFF_MEAS_DATE,
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
    FIFF_PROJ_ITEM_CH_NAME_LIST,
    FIFF_PROJ_ITEM_KIND,
    FIFF_PROJ_ITEM_NVEC,
    FIFF_PROJ_ITEM_VECTORS,
    FIFF_SFREQ,
    FIFFB_ISOTRAK,
    FIFFB_MEAS,
    FIFFB_MEAS_INFO,
    FIFFB_MNE_BAD_CHANNELS,
    FIFFB_MNE_CTF_COMP_DATA,
    FIFFB_MNE_NAMED_MATRIX,
    FIFFB_PROJ,
    FIFFB_PROJ_ITEM,
    FIFFV_COORD_DEVICE,
    FIFFV_COORD_HEAD,
    FIFFV_MNE_COORD_CTF_HEAD,
)
from fiffkit.storage.reader import FiffReader
from fiffkit.storage.tree import Block
from fiffkit.storage.writer import FiffWriter
from fiffkit.utils.schema import CtfComp, MeasInfo, NamedMatrix, Projection


def split_name_list(value: str | None) -> list[str]:
    if not value:
        return []
    return value.split(":")


def _flatten(values: list[Any]) -> list[Any]:
    out: list[Any] = []
    for v in values:
        out.extend(v if isinstance(v, list) else [v])
    return out


def _required(reader: FiffReader, block: Block, kind: int) -> Any:
    value = reader.tag_value(block, kind)
    if value is None:
        raise TagNotFound(f"Tag of kind {kind} missing from block {block.name}")
    return value


# ── Named matrices ──────────────────────────────────────────


def read_named_matrix(reader: FiffReader, block: Block, kind: int) -> NamedMatrix:
    """Read the named matrix of ``kind`` stored in or below ``block``."""
    tree = reader.tree
    node = block
    if block.kind != FIFFB_MNE_NAMED_MATRIX:
        for sub in tree.find_blocks(FIFFB_MNE_NAMED_MATRIX, block):
            if tree.entries(sub, kind):
                node = sub
                break
        else:
            raise TagNotFound(f"No named matrix of kind {kind} under block {block.name}")

    data = np.atleast_2d(_required(reader, node, kind))
    nrow = reader.tag_value(node, FIFF_MNE_NROW, data.shape[0])
    ncol = reader.tag_value(node, FIFF_MNE_NCOL, data.shape[1])
    if (nrow, ncol) != data.shape:
        raise DimensionMismatch(
            f"Named matrix declares {nrow}x{ncol} but holds {data.shape[0]}x{data.shape[1]}"
        )
    row_names = split_name_list(reader.tag_value(node, FIFF_MNE_ROW_NAMES))
    col_names = split_name_list(reader.tag_value(node, FIFF_MNE_COL_NAMES))
    if row_names and len(row_names) != nrow:
        raise DimensionMismatch(f"{len(row_names)} row names for {nrow} rows")
    if col_names and len(col_names) != ncol:
        raise DimensionMismatch(f"{len(col_names)} column names for {ncol} columns")
    return NamedMatrix(row_names=row_names, col_names=col_names, data=data)


# ── Projections, compensation, bad channels ────────────────


def read_proj(reader: FiffReader, start: Block) -> list[Projection]:
    tree = reader.tree
    proj_block = tree.find_block(FIFFB_PROJ, start)
    if proj_block is None:
        return []

    projs: list[Projection] = []
    for item in tree.find_blocks(FIFFB_PROJ_ITEM, proj_block):
        names = split_name_list(_required(reader, item, FIFF_PROJ_ITEM_CH_NAME_LIST))
        vectors = np.atleast_2d(_required(reader, item, FIFF_PROJ_ITEM_VECTORS))
        nvec = reader.tag_value(item, FIFF_PROJ_ITEM_NVEC, vectors.shape[0])
        if vectors.shape != (nvec, len(names)):
            raise DimensionMismatch(
                f"Projection vectors of shape {vectors.shape} for {nvec} vectors "
                f"over {len(names)} channels"
            )
        projs.append(Projection(
            kind=_required(reader, item, FIFF_PROJ_ITEM_KIND),
            active=bool(reader.tag_value(item, FIFF_MNE_PROJ_ITEM_ACTIVE, 0)),
            desc=reader.tag_value(item, FIFF_DESCRIPTION, ""),
            data=NamedMatrix(col_names=names, data=vectors),
        ))
    return projs


def read_ctf_comp(reader: FiffReader, start: Block) -> list[CtfComp]:
    comps: list[CtfComp] = []
    for block in reader.tree.find_blocks(FIFFB_MNE_CTF_COMP_DATA, start):
        comps.append(CtfComp(
            kind=_required(reader, block, FIFF_MNE_CTF_COMP_KIND),
            save_calibrated=bool(reader.tag_value(block, FIFF_MNE_CTF_COMP_CALIBRATED, 0)),
            data=read_named_matrix(reader, block, FIFF_MNE_CTF_COMP_DATA),
        ))
    return comps


def read_bad_channels(reader: FiffReader, start: Block) -> list[str]:
    block = reader.tree.find_block(FIFFB_MNE_BAD_CHANNELS, start)
    if block is None:
        return []
    return split_name_list(reader.tag_value(block, FIFF_MNE_CH_NAME_LIST))


# ── Measurement info ────────────────────────────────────────


def read_meas_info(reader: FiffReader) -> tuple[MeasInfo, Block]:
    """Read the measurement info of an opened file.

    Returns:
        The decoded info and the MEAS block it was found in.

    Raises:
        MissingChannelInfo: No measurement info, no channels, or no
            channel count / sampling frequency.
        MissingCalibration: The channel count disagrees with the number
            of channel records.
    """
    tree = reader.tree
    meas = tree.find_block(FIFFB_MEAS)
    if meas is None:
        raise MissingChannelInfo(f"No measurement block in {reader.path}")
    meas_info = tree.find_block(FIFFB_MEAS_INFO, meas)
    if meas_info is None:
        raise MissingChannelInfo(f"No measurement info block in {reader.path}")

    chs = _flatten(reader.tag_values(meas_info, FIFF_CH_INFO))
    if not chs:
        raise MissingChannelInfo(f"No channel information in {reader.path}")
    nchan = reader.tag_value(meas_info, FIFF_NCHAN)
    if nchan is None:
        raise MissingChannelInfo("Number of channels is not defined")
    sfreq = reader.tag_value(meas_info, FIFF_SFREQ)
    if sfreq is None:
        raise MissingChannelInfo("Sampling frequency is not defined")
    if nchan != len(chs):
        raise MissingCalibration(
            f"Header declares {nchan} channels but holds {len(chs)} channel records"
        )

    dev_head_t = None
    ctf_head_t = None
    for trans in _flatten(reader.tag_values(meas_info, FIFF_COORD_TRANS)):
        frames = (trans.from_frame, trans.to_frame)
        if frames == (FIFFV_COORD_DEVICE, FIFFV_COORD_HEAD):
            dev_head_t = trans
        elif frames == (FIFFV_COORD_HEAD, FIFFV_COORD_DEVICE):
            dev_head_t = trans.inverse()
        elif frames == (FIFFV_MNE_COORD_CTF_HEAD, FIFFV_COORD_HEAD):
            ctf_head_t = trans

    dig = []
    isotrak = tree.find_block(FIFFB_ISOTRAK, meas_info)
    if isotrak is not None:
        dig = _flatten(reader.tag_values(isotrak, FIFF_DIG_POINT))

    meas_date = reader.tag_value(meas_info, FIFF_MEAS_DATE)
    if meas_date is not None:
        meas_date = tuple(int(x) for x in np.atleast_1d(meas_date)[:2])

    info = MeasInfo(
        file_id=reader.file_id,
        meas_id=reader.tag_value(meas, FIFF_BLOCK_ID),
        nchan=nchan,
        sfreq=sfreq,
        lowpass=reader.tag_value(meas_info, FIFF_LOWPASS),
        highpass=reader.tag_value(meas_info, FIFF_HIGHPASS),
        meas_date=meas_date,
        chs=chs,
        dev_head_t=dev_head_t,
        ctf_head_t=ctf_head_t,
        dig=dig,
        bads=read_bad_channels(reader, meas),
        projs=read_proj(reader, meas_info),
        comps=read_ctf_comp(reader, meas_info),
    )
    return info, meas


def write_meas_info(writer: FiffWriter, info: MeasInfo) -> None:
    """Write ``info`` as a measurement info block."""
    writer.start_block(FIFFB_MEAS_INFO)
    writer.write_dig_points(info.dig)
    writer.write_proj(info.projs)
    writer.write_ctf_comp(info.comps)
    writer.write_bad_channels(info.bads)

    writer.write_float(FIFF_SFREQ, info.sfreq)
    if info.highpass is not None:
        writer.write_float(FIFF_HIGHPASS, info.highpass)
    if info.lowpass is not None:
        writer.write_float(FIFF_LOWPASS, info.lowpass)
    writer.write_int(FIFF_NCHAN, len(info.chs))
    if info.meas_date is not None:
        writer.write_int(FIFF_MEAS_DATE, list(info.meas_date))

    if info.dev_head_t is not None:
        writer.write_coord_trans(info.dev_head_t)
    if info.ctf_head_t is not None:
        writer.write_coord_trans(info.ctf_head_t)

    for ch in info.chs:
        writer.write_ch_info(ch)
    writer.end_block(FIFFB_MEAS_INFO)
