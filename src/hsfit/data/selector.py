from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import Any, Hashable, Iterator, List, Sequence, Tuple

from ..errors import DataError
from ..params.types import PairKind

__all__ = ["AtomBlock", "DataSelector"]

AtomBlock = Tuple[int, int]


def _is_index(x: Any) -> bool:
    if isinstance(x, bool):
        return False
    try:
        operator.index(x)
    except TypeError:
        return False
    return True


def _is_pair(x: Any) -> bool:
    return isinstance(x, (list, tuple)) and len(x) == 2 and all(_is_index(v) for v in x)


def _normalise(block: Any, pair_kind: PairKind, where: str) -> AtomBlock:
    if pair_kind.is_on_site:
        if not _is_index(block):
            raise DataError(f"{where}: on-site block {block!r} must be an atom index")
        pair = (int(block), int(block))
    else:
        if not _is_pair(block):
            raise DataError(f"{where}: off-site block {block!r} must be an (i, j) pair")
        pair = (int(block[0]), int(block[1]))
        if pair[0] == pair[1]:
            raise DataError(f"{where}: off-site block {pair} pairs an atom with itself")
    if pair[0] < 0 or pair[1] < 0:
        raise DataError(f"{where}: negative atom index in block {pair}")
    return pair


@dataclass(frozen=True)
class DataSelector:
    """Which reference files and which atom blocks supply fitting targets.

    ``blocks`` is either one flat list, broadcast to every file, or a nested
    list with one entry per file. Nothing is read here; files are opaque
    references handed to the reference source by the fitter.
    """

    files: Tuple[Hashable, ...]
    per_file: Tuple[Tuple[AtomBlock, ...], ...]
    pair_kind: PairKind

    def __init__(self, files: Sequence[Hashable], blocks: Sequence[Any], pair_kind: PairKind) -> None:
        pair_kind = PairKind(pair_kind)
        files = tuple(files)
        if len(files) == 0:
            raise DataError("Data selection names no files")
        blocks = list(blocks)
        if self._is_nested(blocks, pair_kind):
            if len(blocks) != len(files):
                raise DataError(
                    f"Nested block selection has {len(blocks)} entries for {len(files)} files"
                )
            for f, fb in zip(files, blocks):
                if not isinstance(fb, (list, tuple)):
                    raise DataError(f"file {f!r}: per-file selection {fb!r} must be a list of blocks")
            per_file = tuple(
                tuple(_normalise(b, pair_kind, f"file {f!r}") for b in fb)
                for f, fb in zip(files, blocks)
            )
        else:
            flat = tuple(_normalise(b, pair_kind, "selection") for b in blocks)
            per_file = tuple(flat for _ in files)
        object.__setattr__(self, "files", files)
        object.__setattr__(self, "per_file", per_file)
        object.__setattr__(self, "pair_kind", pair_kind)

    @staticmethod
    def _is_nested(blocks: List[Any], pair_kind: PairKind) -> bool:
        if not blocks:
            return False
        if pair_kind.is_on_site:
            # flat on-site entries are atom indices
            return not all(_is_index(b) for b in blocks)
        # flat off-site entries are (i, j) pairs
        return not all(_is_pair(b) for b in blocks)

    def blocks(self, file_index: int) -> Tuple[AtomBlock, ...]:
        return self.per_file[file_index]

    def __iter__(self) -> Iterator[Tuple[Hashable, Tuple[AtomBlock, ...]]]:
        return iter(zip(self.files, self.per_file))

    def __len__(self) -> int:
        return len(self.files)

    @property
    def n_blocks(self) -> int:
        return sum(len(b) for b in self.per_file)
