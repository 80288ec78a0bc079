from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Tuple

import numpy as np
import torch
from ase import Atoms
from ase.geometry import get_distances

from .errors import DataError

__all__ = [
    "Environment",
    "AtomicEnvironmentSource",
    "NeighbourEnvironmentSource",
]

Tensor = torch.Tensor


@dataclass(frozen=True)
class Environment:
    """Local geometry around an atom (on-site) or an atom pair (off-site).

    - block: (i, i) or (i, j)
    - species: atomic numbers of the two block atoms
    - bond: r_j - r_i (minimum image), zeros for on-site blocks
    - vectors: (n, 3) neighbour positions relative to the centre
      (atom i on-site, bond midpoint off-site); block atoms excluded
    - numbers: (n,) neighbour atomic numbers
    """

    block: Tuple[int, int]
    species: Tuple[int, int]
    bond: Tensor
    vectors: Tensor
    numbers: Tensor
    cutoff: float

    @property
    def on_site(self) -> bool:
        return self.block[0] == self.block[1]

    @property
    def distances(self) -> Tensor:
        return torch.linalg.norm(self.vectors, dim=-1)


class AtomicEnvironmentSource(Protocol):
    def environment(self, configuration: Atoms, block: Tuple[int, int], cutoff: float) -> Environment:
        ...


class NeighbourEnvironmentSource:
    """Cutoff-sphere environments from an ``ase.Atoms`` configuration.

    Periodic cells use the minimum-image convention, so each neighbour
    contributes once; cutoffs larger than half the cell are not expanded
    over further images.
    """

    def __init__(self, dtype: torch.dtype = torch.float64) -> None:
        self.dtype = dtype

    def environment(self, configuration: Atoms, block: Tuple[int, int], cutoff: float) -> Environment:
        i, j = int(block[0]), int(block[1])
        nat = len(configuration)
        if not (0 <= i < nat and 0 <= j < nat):
            raise DataError(f"Block {(i, j)} outside configuration of {nat} atoms")
        pos = configuration.get_positions()
        cell = configuration.cell
        pbc = configuration.pbc
        if i == j:
            centre = pos[i]
            bond = np.zeros(3)
        else:
            D_ij, _ = get_distances(pos[i], pos[j], cell=cell, pbc=pbc)
            bond = D_ij[0, 0]
            centre = pos[i] + 0.5 * bond
        D, d = get_distances(centre[None, :], pos, cell=cell, pbc=pbc)
        D, d = D[0], d[0]
        mask = d < cutoff
        mask[i] = False
        mask[j] = False
        numbers = configuration.numbers
        return Environment(
            block=(i, j),
            species=(int(numbers[i]), int(numbers[j])),
            bond=torch.as_tensor(bond, dtype=self.dtype),
            vectors=torch.as_tensor(D[mask], dtype=self.dtype).reshape(-1, 3),
            numbers=torch.as_tensor(numbers[mask], dtype=torch.long),
            cutoff=float(cutoff),
        )
