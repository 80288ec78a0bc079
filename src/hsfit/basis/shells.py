from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple, Union

from ase.data import atomic_numbers, chemical_symbols

from ..errors import ConfigurationError, IllegalStateError

__all__ = [
    "ShellType",
    "ShellBasisRegistry",
    "as_species",
]

Species = Union[int, str]


@dataclass(frozen=True)
class ShellType:
    l: int  # angular momentum
    n: int  # number of radial functions

    @property
    def multiplicity(self) -> int:
        return 2 * self.l + 1

    @property
    def n_orbitals(self) -> int:
        return self.n * self.multiplicity


def as_species(z: Species) -> int:
    """Return the atomic number for ``z`` given as int or chemical symbol."""
    if isinstance(z, str):
        if z not in atomic_numbers:
            raise ConfigurationError(f"Unknown chemical symbol {z!r}")
        return int(atomic_numbers[z])
    zi = int(z)
    if zi <= 0 or zi >= len(chemical_symbols):
        raise ConfigurationError(f"Atomic number out of range: {zi}")
    return zi


def _shell(entry: Union[ShellType, Sequence[int]], z: int, idx: int) -> ShellType:
    if isinstance(entry, ShellType):
        l, n = entry.l, entry.n
    else:
        if len(entry) != 2:
            raise ConfigurationError(
                f"Shell {idx} of Z={z} must be an (l, n) pair, got {entry!r}"
            )
        l, n = int(entry[0]), int(entry[1])
    if l < 0:
        raise ConfigurationError(f"Shell {idx} of Z={z} has negative angular momentum l={l}")
    if n < 0:
        raise ConfigurationError(f"Shell {idx} of Z={z} has negative radial count n={n}")
    return ShellType(l=l, n=n)


class ShellBasisRegistry:
    """Per-element shell composition and the resulting orbital layout.

    Orbitals of one atom are ordered shell-major, then by radial index, then
    by magnetic quantum number m = -l..+l. Every (shell, radial) pair owns a
    contiguous range of 2l+1 rows/columns inside a dense atom block.
    """

    def __init__(self, shells: Mapping[Species, Iterable[Union[ShellType, Sequence[int]]]]) -> None:
        if not shells:
            raise ConfigurationError("Shell basis declaration is empty")
        self._shells: Dict[int, Tuple[ShellType, ...]] = {}
        self._offsets: Dict[int, Tuple[int, ...]] = {}
        self._norb: Dict[int, int] = {}
        for key, entries in shells.items():
            z = as_species(key)
            if z in self._shells:
                raise ConfigurationError(f"Duplicate shell declaration for Z={z}")
            decl = tuple(_shell(e, z, k) for k, e in enumerate(entries))
            if len(decl) == 0:
                raise ConfigurationError(f"Empty shell list for Z={z}")
            offsets: List[int] = []
            norb = 0
            for sh in decl:
                offsets.append(norb)
                norb += sh.n_orbitals
            self._shells[z] = decl
            self._offsets[z] = tuple(offsets)
            self._norb[z] = norb

    def __repr__(self) -> str:
        body = ", ".join(
            f"{chemical_symbols[z]}: {[(s.l, s.n) for s in sh]}" for z, sh in self._shells.items()
        )
        return f"ShellBasisRegistry({{{body}}})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ShellBasisRegistry):
            return NotImplemented
        return self._shells == other._shells

    def __contains__(self, z: object) -> bool:
        try:
            return as_species(z) in self._shells  # type: ignore[arg-type]
        except (ConfigurationError, TypeError, ValueError):
            return False

    @property
    def species(self) -> Tuple[int, ...]:
        return tuple(sorted(self._shells))

    def _require(self, z: Species) -> int:
        zi = as_species(z)
        if zi not in self._shells:
            raise IllegalStateError(f"Species Z={zi} has no declared shells")
        return zi

    def shells(self, z: Species) -> Tuple[ShellType, ...]:
        return self._shells[self._require(z)]

    def n_orbitals(self, z: Species) -> int:
        return self._norb[self._require(z)]

    def shell(self, z: Species, shell: int) -> ShellType:
        decl = self.shells(z)
        if not 0 <= shell < len(decl):
            raise IllegalStateError(f"Shell index {shell} out of range for Z={as_species(z)}")
        return decl[shell]

    def shell_slice(self, z: Species, shell: int) -> slice:
        sh = self.shell(z, shell)
        start = self._offsets[as_species(z)][shell]
        return slice(start, start + sh.n_orbitals)

    def radial_slice(self, z: Species, shell: int, radial: int) -> slice:
        """Row/column range owned by radial function ``radial`` of ``shell``."""
        sh = self.shell(z, shell)
        if not 0 <= radial < sh.n:
            raise IllegalStateError(
                f"Radial index {radial} out of range for shell {shell} of Z={as_species(z)}"
            )
        start = self._offsets[as_species(z)][shell] + radial * sh.multiplicity
        return slice(start, start + sh.multiplicity)

    def orbital_labels(self, z: Species) -> List[Tuple[int, int, int]]:
        """(shell, radial, m) for every orbital of species ``z`` in matrix order."""
        out: List[Tuple[int, int, int]] = []
        for s, sh in enumerate(self.shells(z)):
            for r in range(sh.n):
                for m in range(-sh.l, sh.l + 1):
                    out.append((s, r, m))
        return out

    def shell_pairs(self, z_a: Species, z_b: Species, on_site: bool) -> List[Tuple[int, int]]:
        """Shell-index pairs modelled for a species pair.

        On-site pairs are unordered (A <= B) and require z_a == z_b; off-site
        pairs are ordered.
        """
        na = len(self.shells(z_a))
        nb = len(self.shells(z_b))
        if on_site:
            if as_species(z_a) != as_species(z_b):
                raise ConfigurationError("On-site shell pairs require a single species")
            return [(a, b) for a in range(na) for b in range(a, nb)]
        return [(a, b) for a in range(na) for b in range(nb)]

    def to_dict(self) -> Dict[str, List[List[int]]]:
        return {str(z): [[s.l, s.n] for s in sh] for z, sh in sorted(self._shells.items())}

    @classmethod
    def from_dict(cls, data: Mapping[str, Sequence[Sequence[int]]]) -> "ShellBasisRegistry":
        parsed: Dict[Species, Sequence[Sequence[int]]] = {}
        for k, v in data.items():
            parsed[int(k) if str(k).isdigit() else k] = v
        return cls(parsed)
