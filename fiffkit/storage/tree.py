"""Block tree rebuilt from a flat tag directory.

Blocks live in a flat list and refer to each other by index. Block 0 is the
implicit root, which owns every tag and block outside of explicit markers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence, Union

from fiffkit.errors import UnclosedBlock, UnmatchedBlockEnd
from fiffkit.storage.format import BLOCK_KIND_NAMES, FIFF_BLOCK_END, FIFF_BLOCK_START, FIFFB_ROOT
from fiffkit.storage.tag import DirEntry

# A child is either the index of a sub-block or a leaf tag entry.
Child = Union[int, DirEntry]


@dataclass(slots=True)
class Block:
    index: int
    kind: int
    parent: int | None
    start: DirEntry | None = None
    children: list[Child] = field(default_factory=list)

    @property
    def name(self) -> str:
        return BLOCK_KIND_NAMES.get(self.kind, str(self.kind))


class DirTree:
    """Read-only navigation over the reconstructed blocks."""

    def __init__(self, blocks: list[Block]) -> None:
        self._blocks = blocks

    @property
    def root(self) -> Block:
        return self._blocks[0]

    @property
    def blocks(self) -> list[Block]:
        return list(self._blocks)

    @property
    def num_blocks(self) -> int:
        """Number of explicit blocks (the root is not counted)."""
        return len(self._blocks) - 1

    def block(self, index: int) -> Block:
        return self._blocks[index]

    def parent(self, block: Block) -> Block | None:
        return None if block.parent is None else self._blocks[block.parent]

    def children(self, block: Block) -> Iterator[Block | DirEntry]:
        """Sub-blocks and leaf tags of ``block`` in document order."""
        for child in block.children:
            yield self._blocks[child] if isinstance(child, int) else child

    def subblocks(self, block: Block) -> list[Block]:
        return [self._blocks[c] for c in block.children if isinstance(c, int)]

    def entries(self, block: Block, kind: int | None = None) -> list[DirEntry]:
        """Leaf tags directly under ``block``, optionally of one kind."""
        return [
            c for c in block.children
            if not isinstance(c, int) and (kind is None or c.kind == kind)
        ]

    def walk(self, start: Block | None = None) -> Iterator[tuple[int, Block]]:
        """Depth-first pre-order traversal yielding (depth, block)."""
        stack = [(0, start or self.root)]
        while stack:
            depth, block = stack.pop()
            yield depth, block
            subs = self.subblocks(block)
            stack.extend((depth + 1, b) for b in reversed(subs))

    def find_blocks(self, kind: int, start: Block | None = None) -> list[Block]:
        """All blocks of ``kind`` at or below ``start``, in document order."""
        return [b for _, b in self.walk(start) if b.kind == kind]

    def find_block(self, kind: int, start: Block | None = None) -> Block | None:
        """First block of ``kind`` at or below ``start``."""
        for _, block in self.walk(start):
            if block.kind == kind:
                return block
        return None

    def __len__(self) -> int:
        return len(self._blocks)

    def __repr__(self) -> str:
        return f"DirTree(blocks={self.num_blocks}, root_children={len(self.root.children)})"


def build_tree(directory: Sequence[DirEntry], block_kind: Callable[[DirEntry], int]) -> DirTree:
    """Rebuild the block tree from a directory in one pass.

    Args:
        directory: Ordered tag directory.
        block_kind: Returns the block kind stored in a BLOCK_START or
            BLOCK_END tag.

    Raises:
        UnmatchedBlockEnd: A BLOCK_END has no open block or closes a
            block of another kind.
        UnclosedBlock: A BLOCK_START is still open at the end.
    """
    blocks = [Block(index=0, kind=FIFFB_ROOT, parent=None)]
    stack = [0]

    for ent in directory:
        if ent.kind == FIFF_BLOCK_START:
            top = stack[-1]
            block = Block(index=len(blocks), kind=block_kind(ent), parent=top, start=ent)
            blocks.append(block)
            blocks[top].children.append(block.index)
            stack.append(block.index)
        elif ent.kind == FIFF_BLOCK_END:
            kind = block_kind(ent)
            if len(stack) == 1:
                raise UnmatchedBlockEnd(
                    f"Block end of kind {kind} at offset {ent.pos} with no open block"
                )
            open_kind = blocks[stack[-1]].kind
            if kind != open_kind:
                raise UnmatchedBlockEnd(
                    f"Block end of kind {kind} at offset {ent.pos} "
                    f"while block of kind {open_kind} is open"
                )
            stack.pop()
        else:
            blocks[stack[-1]].children.append(ent)

    if len(stack) > 1:
        unclosed = blocks[stack[-1]]
        raise UnclosedBlock(
            f"{len(stack) - 1} block(s) never closed, innermost of kind {unclosed.kind}"
        )
    return DirTree(blocks)
