"""Random-access reader for .fif files.

Opening a file builds the tag directory and the block tree; payloads are
only read when a tag is requested.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, BinaryIO

from fiffkit.errors import CorruptPayload, IOFailure
from fiffkit.storage.directory import build_directory
from fiffkit.storage.format import FIFF_FILE_ID
from fiffkit.storage.tag import DirEntry, Tag, read_tag
from fiffkit.storage.tree import Block, DirTree, build_tree
from fiffkit.utils.schema import FiffId

logger = logging.getLogger(__name__)


class FiffReader:
    """Tag-level reader for a .fif file.

    Args:
        path: Path to the file.
        use_index: Use the file's pre-built tag index when present.
    """

    def __init__(self, path: str | Path, use_index: bool = True) -> None:
        self.path = Path(path)
        self.use_index = use_index

        self._fid: BinaryIO | None = None
        self._directory: list[DirEntry] | None = None
        self._tree: DirTree | None = None

    def open(self) -> None:
        """Open the file and build its directory and block tree."""
        if self._fid is not None:
            raise RuntimeError("Reader already opened.")
        try:
            self._fid = open(self.path, "rb")
        except OSError as exc:
            raise IOFailure(f"Cannot open {self.path}: {exc}") from exc

        try:
            self._directory = build_directory(self._fid, use_index=self.use_index)
            self._tree = build_tree(self._directory, self._block_kind)
        except BaseException:
            self.close()
            raise
        logger.debug(
            "Opened %s: %d tags, %d blocks",
            self.path, len(self._directory), self._tree.num_blocks,
        )

    def close(self) -> None:
        """Close the file. The directory and tree are dropped with it."""
        if self._fid is not None:
            self._fid.close()
            self._fid = None
        self._directory = None
        self._tree = None

    def __enter__(self) -> FiffReader:
        if self._fid is None:
            self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._fid is not None

    @property
    def fid(self) -> BinaryIO:
        if self._fid is None:
            raise RuntimeError("Reader not opened. Call .open() first.")
        return self._fid

    @property
    def directory(self) -> list[DirEntry]:
        if self._directory is None:
            raise RuntimeError("Reader not opened. Call .open() first.")
        return self._directory

    @property
    def tree(self) -> DirTree:
        if self._tree is None:
            raise RuntimeError("Reader not opened. Call .open() first.")
        return self._tree

    @property
    def file_id(self) -> FiffId | None:
        ents = self.tree.entries(self.tree.root, FIFF_FILE_ID)
        return self.read_value(ents[0]) if ents else None

    # --- Tag access ---

    def read_tag(self, entry: DirEntry) -> Tag:
        return read_tag(self.fid, entry.pos)

    def read_value(self, entry: DirEntry) -> Any:
        return self.read_tag(entry).value

    def tag_value(self, block: Block, kind: int, default: Any = None) -> Any:
        """Value of the first tag of ``kind`` directly under ``block``."""
        ents = self.tree.entries(block, kind)
        if not ents:
            return default
        return self.read_value(ents[0])

    def tag_values(self, block: Block, kind: int) -> list[Any]:
        """Values of all tags of ``kind`` directly under ``block``."""
        return [self.read_value(ent) for ent in self.tree.entries(block, kind)]

    def _block_kind(self, entry: DirEntry) -> int:
        value = self.read_value(entry)
        if not isinstance(value, int):
            raise CorruptPayload(f"Block marker at offset {entry.pos} does not hold a single int")
        return value


def open_fiff(path: str | Path, use_index: bool = True) -> FiffReader:
    """Open a .fif file and return a reader with its directory and tree built."""
    reader = FiffReader(path, use_index=use_index)
    reader.open()
    return reader
