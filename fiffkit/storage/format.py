"""FIFF tag container constants.

A .fif file is a flat sequence of tags. Each tag is a 16-byte big-endian
header followed by its payload:

    kind   int32   — what the tag means (channel info, block start, ...)
    type   int32   — how the payload is encoded (int32, float32, matrix, ...)
    size   int32   — payload length in bytes
    next   int32   — offset of the next tag, NEXT_SEQ or NEXT_NONE

Nesting is expressed with BLOCK_START / BLOCK_END tags whose payload is the
int32 block kind.
"""

# Header layout
TAG_HEADER_FORMAT = ">iiii"
TAG_HEADER_SIZE = 16

# `next` sentinels
NEXT_SEQ = 0    # next tag follows immediately
NEXT_NONE = -1  # last tag in the file

# File extension
FILE_EXTENSION = ".fif"

# Version written into file and block ids (major 1, minor 3)
FORMAT_VERSION = (1 << 16) | 3

# Upper bound for a single raw data buffer payload (bytes)
DEFAULT_MAX_BUFFER_BYTES = 4 * 1024 * 1024

# --- Tag kinds ---
FIFF_FILE_ID = 100
FIFF_DIR_POINTER = 101
FIFF_DIR = 102
FIFF_BLOCK_ID = 103
FIFF_BLOCK_START = 104
FIFF_BLOCK_END = 105
FIFF_FREE_LIST = 106
FIFF_NOP = 108
FIFF_PARENT_BLOCK_ID = 110

FIFF_NCHAN = 200
FIFF_SFREQ = 201
FIFF_CH_INFO = 203
FIFF_MEAS_DATE = 204
FIFF_COMMENT = 206
FIFF_DESCRIPTION = FIFF_COMMENT
FIFF_FIRST_SAMPLE = 208
FIFF_LAST_SAMPLE = 209
FIFF_DIG_POINT = 213
FIFF_LOWPASS = 219
FIFF_COORD_TRANS = 222
FIFF_HIGHPASS = 223

FIFF_DATA_BUFFER = 300
FIFF_DATA_SKIP = 301

FIFF_PROJ_ITEM_KIND = 3411
FIFF_PROJ_ITEM_TIME = 3412
FIFF_PROJ_ITEM_NVEC = 3414
FIFF_PROJ_ITEM_VECTORS = 3415
FIFF_PROJ_ITEM_CH_NAME_LIST = 3417

FIFF_MNE_ROW_NAMES = 3502
FIFF_MNE_COL_NAMES = 3503
FIFF_MNE_NROW = 3504
FIFF_MNE_NCOL = 3505
FIFF_MNE_CH_NAME_LIST = 3507
FIFF_MNE_CTF_COMP_KIND = 3532
FIFF_MNE_CTF_COMP_DATA = 3533
FIFF_MNE_CTF_COMP_CALIBRATED = 3534
FIFF_MNE_PROJ_ITEM_ACTIVE = 3560

# --- Block kinds ---
FIFFB_ROOT = 999
FIFFB_MEAS = 100
FIFFB_MEAS_INFO = 101
FIFFB_RAW_DATA = 102
FIFFB_ISOTRAK = 107
FIFFB_CONTINUOUS_DATA = 112
FIFFB_SMSH_RAW_DATA = 119
FIFFB_PROJ = 313
FIFFB_PROJ_ITEM = 314
FIFFB_MNE_BAD_CHANNELS = 359
FIFFB_MNE_CTF_COMP = 3507
FIFFB_MNE_CTF_COMP_DATA = 3508
FIFFB_MNE_NAMED_MATRIX = 3509

RAW_BLOCK_KINDS = (FIFFB_RAW_DATA, FIFFB_CONTINUOUS_DATA)

# --- Data types ---
FIFFT_VOID = 0
FIFFT_SHORT = 2
FIFFT_INT = 3
FIFFT_FLOAT = 4
FIFFT_DOUBLE = 5
FIFFT_STRING = 10
FIFFT_DAU_PACK16 = 16
FIFFT_CH_INFO_STRUCT = 30
FIFFT_ID_STRUCT = 31
FIFFT_DIR_ENTRY_STRUCT = 32
FIFFT_DIG_POINT_STRUCT = 33
FIFFT_COORD_TRANS_STRUCT = 35

FIFFT_MATRIX = 0x40000000
FIFFT_MATRIX_FLOAT = FIFFT_MATRIX | FIFFT_FLOAT

# Channel kinds
FIFFV_MEG_CH = 1
FIFFV_REF_MEG_CH = 301
FIFFV_EEG_CH = 2
FIFFV_MCG_CH = 201
FIFFV_STIM_CH = 3
FIFFV_EOG_CH = 202
FIFFV_EMG_CH = 302
FIFFV_ECG_CH = 402
FIFFV_MISC_CH = 502

# Coordinate frames
FIFFV_COORD_UNKNOWN = 0
FIFFV_COORD_DEVICE = 1
FIFFV_COORD_ISOTRAK = 2
FIFFV_COORD_HPI = 3
FIFFV_COORD_HEAD = 4
FIFFV_COORD_MRI = 5
FIFFV_MNE_COORD_CTF_HEAD = 2004

CHANNEL_KIND_NAMES = {
    FIFFV_MEG_CH: "MEG",
    FIFFV_REF_MEG_CH: "REF_MEG",
    FIFFV_EEG_CH: "EEG",
    FIFFV_MCG_CH: "MCG",
    FIFFV_STIM_CH: "STIM",
    FIFFV_EOG_CH: "EOG",
    FIFFV_EMG_CH: "EMG",
    FIFFV_ECG_CH: "ECG",
    FIFFV_MISC_CH: "MISC",
}

BLOCK_KIND_NAMES = {
    FIFFB_ROOT: "root",
    FIFFB_MEAS: "meas",
    FIFFB_MEAS_INFO: "meas_info",
    FIFFB_RAW_DATA: "raw_data",
    FIFFB_ISOTRAK: "isotrak",
    FIFFB_CONTINUOUS_DATA: "continuous_data",
    FIFFB_SMSH_RAW_DATA: "smsh_raw_data",
    FIFFB_PROJ: "proj",
    FIFFB_PROJ_ITEM: "proj_item",
    FIFFB_MNE_BAD_CHANNELS: "mne_bad_channels",
    FIFFB_MNE_CTF_COMP: "mne_ctf_comp",
    FIFFB_MNE_CTF_COMP_DATA: "mne_ctf_comp_data",
    FIFFB_MNE_NAMED_MATRIX: "mne_named_matrix",
}
