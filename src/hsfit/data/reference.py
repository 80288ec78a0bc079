from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Hashable, List, Optional, Protocol, Tuple

import numpy as np
import torch
from ase import Atoms

from ..basis.shells import ShellBasisRegistry
from ..errors import DataError, IllegalStateError
from ..params.types import Quantity

__all__ = [
    "ReferenceMatrixSource",
    "ReferenceRecord",
    "DenseReferenceSource",
    "NpzReferenceSource",
    "save_reference_npz",
]

logger = logging.getLogger(__name__)

Tensor = torch.Tensor


class ReferenceMatrixSource(Protocol):
    def configuration(self, file: Hashable) -> Atoms:
        ...

    def block(self, file: Hashable, block: Tuple[int, int], quantity: Quantity) -> Tensor:
        ...


@dataclass(frozen=True)
class ReferenceRecord:
    """One configuration with its dense reference matrices and AO offsets."""

    atoms: Atoms
    matrices: Dict[Quantity, Tensor]
    offsets: Tuple[int, ...] = field(default=())
    sizes: Tuple[int, ...] = field(default=())


def _build_record(
    registry: ShellBasisRegistry, name: Hashable, atoms: Atoms, matrices: Dict[Quantity, Tensor]
) -> ReferenceRecord:
    sizes: List[int] = []
    offsets: List[int] = []
    nao = 0
    for ia, z in enumerate(atoms.numbers.tolist()):
        try:
            n = registry.n_orbitals(int(z))
        except IllegalStateError:
            raise DataError(f"{name!r}: atom {ia} has undeclared species Z={int(z)}") from None
        offsets.append(nao)
        sizes.append(n)
        nao += n
    for q, M in matrices.items():
        if tuple(M.shape) != (nao, nao):
            raise DataError(
                f"{name!r}: {q.value} matrix has shape {tuple(M.shape)}, basis implies ({nao}, {nao})"
            )
    return ReferenceRecord(atoms=atoms, matrices=matrices, offsets=tuple(offsets), sizes=tuple(sizes))


class DenseReferenceSource:
    """Reference blocks sliced out of full in-memory H/S matrices.

    Atom-block (i, j) of a matrix is rows of atom i by columns of atom j, with
    per-atom sizes taken from the shell registry.
    """

    def __init__(self, registry: ShellBasisRegistry) -> None:
        self.registry = registry
        self._records: Dict[Hashable, ReferenceRecord] = {}

    def add(self, name: Hashable, atoms: Atoms, *, H=None, S=None) -> None:
        matrices: Dict[Quantity, Tensor] = {}
        for q, M in ((Quantity.H, H), (Quantity.S, S)):
            if M is not None:
                matrices[q] = torch.as_tensor(M, dtype=torch.float64)
        self._records[name] = _build_record(self.registry, name, atoms, matrices)

    def _record(self, file: Hashable) -> ReferenceRecord:
        try:
            return self._records[file]
        except KeyError:
            raise DataError(f"Unknown reference file {file!r}") from None

    def configuration(self, file: Hashable) -> Atoms:
        return self._record(file).atoms

    def block(self, file: Hashable, block: Tuple[int, int], quantity: Quantity) -> Tensor:
        rec = self._record(file)
        q = Quantity(quantity)
        if q not in rec.matrices:
            raise DataError(f"{file!r} holds no {q.value} matrix (block {tuple(block)})")
        i, j = block
        nat = len(rec.sizes)
        if not (0 <= i < nat and 0 <= j < nat):
            raise DataError(f"{file!r}: block {tuple(block)} outside configuration of {nat} atoms")
        oi, oj = rec.offsets[i], rec.offsets[j]
        return rec.matrices[q][oi:oi + rec.sizes[i], oj:oj + rec.sizes[j]]


class NpzReferenceSource(DenseReferenceSource):
    """Reference files in ``.npz`` form, loaded on first use.

    Arrays: `numbers` (nat,), `positions` (nat, 3), optional `cell` (3, 3) and
    `pbc` (3,), and at least one of `H`, `S` (nao, nao). The file path is the
    file reference.
    """

    def __init__(self, registry: ShellBasisRegistry) -> None:
        super().__init__(registry)
        self._lock = threading.Lock()

    def _record(self, file: Hashable) -> ReferenceRecord:
        with self._lock:
            rec = self._records.get(file)
            if rec is None:
                rec = self._load(Path(file))  # type: ignore[arg-type]
                self._records[file] = rec
            return rec

    def _load(self, path: Path) -> ReferenceRecord:
        if not path.exists():
            raise DataError(f"Reference file not found: {path}")
        with np.load(path, allow_pickle=False) as data:
            for k in ("numbers", "positions"):
                if k not in data:
                    raise DataError(f"{path}: missing array '{k}'. Available: {list(data.keys())}")
            atoms = Atoms(
                numbers=data["numbers"].astype(np.int64),
                positions=data["positions"].astype(np.float64),
                cell=data["cell"] if "cell" in data else None,
                pbc=data["pbc"] if "pbc" in data else False,
            )
            matrices = {
                q: torch.from_numpy(np.array(data[q.value], dtype=np.float64))
                for q in Quantity
                if q.value in data
            }
        if not matrices:
            raise DataError(f"{path}: contains neither H nor S")
        logger.debug("Loaded reference %s: nat=%d quantities=%s", path, len(atoms),
                     [q.value for q in matrices])
        return _build_record(self.registry, str(path), atoms, matrices)


def save_reference_npz(path: str | Path, atoms: Atoms, *, H=None, S=None) -> Path:
    """Write a configuration and its matrices in the layout NpzReferenceSource reads."""
    p = Path(path)
    arrays: Dict[str, np.ndarray] = {
        "numbers": np.asarray(atoms.numbers, dtype=np.int64),
        "positions": np.asarray(atoms.get_positions(), dtype=np.float64),
        "cell": np.asarray(atoms.cell[:], dtype=np.float64),
        "pbc": np.asarray(atoms.pbc, dtype=bool),
    }
    for name, M in (("H", H), ("S", S)):
        if M is not None:
            arrays[name] = np.asarray(M.detach().cpu().numpy() if isinstance(M, torch.Tensor) else M,
                                      dtype=np.float64)
    np.savez(p, **arrays)
    return p if p.suffix == ".npz" else p.with_name(p.name + ".npz")
