from __future__ import annotations

import logging
import warnings
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..basis.shells import ShellBasisRegistry
from ..errors import ConfigurationError, HyperparameterSymmetryWarning, IllegalStateError
from .types import (
    REGULARIZATION_KINDS,
    SOLVER_IDS,
    HyperParameters,
    ModelKey,
    PairKind,
    Quantity,
    ShellPairKey,
)

__all__ = ["ParameterSpecification", "Grid"]

logger = logging.getLogger(__name__)

Grid = Tuple[Tuple[HyperParameters, ...], ...]


def _coerce_grid(key: ShellPairKey, grid: Any, shape: Tuple[int, int]) -> Grid:
    rows = list(grid) if isinstance(grid, (list, tuple)) else None
    if rows is None:
        raise ConfigurationError(f"Hyperparameter grid for {key} must be a nested sequence")
    got_cols = {len(r) if isinstance(r, (list, tuple)) else -1 for r in rows}
    if -1 in got_cols or len(got_cols) > 1:
        raise ConfigurationError(f"Hyperparameter grid for {key} is ragged or not nested")
    got = (len(rows), got_cols.pop() if got_cols else 0)
    # an empty outer list is (0, 0) regardless of the declared inner size
    if got != shape and not (shape[0] == 0 and got[0] == 0):
        raise ConfigurationError(
            f"Hyperparameter grid for {key} has shape {got}, expected {shape} "
            "(radial counts of the two shells)"
        )
    return tuple(tuple(HyperParameters.coerce(v) for v in r) for r in rows)


class ParameterSpecification:
    """Per shell-pair, per radial-pair hyperparameters plus global solve settings.

    All validation happens here, before any fitting work:
        - every key names declared species and shell indices;
        - on-site keys are single-species with A <= B;
        - each grid has shape (n_A, n_B);
        - regularization kind and solver id belong to the supported sets.

    Off-site keys whose conjugate is also present are compared; if
    grid(A,B) is not the transpose of grid(B,A) a
    HyperparameterSymmetryWarning is emitted. This is advisory only.
    """

    def __init__(
        self,
        registry: ShellBasisRegistry,
        on_site: Optional[Mapping[Any, Any]] = None,
        off_site: Optional[Mapping[Any, Any]] = None,
        *,
        regularization: str = "ridge",
        solver: str = "qr",
    ) -> None:
        if regularization not in REGULARIZATION_KINDS:
            raise ConfigurationError(
                f"Unknown regularization kind {regularization!r}; expected one of {REGULARIZATION_KINDS}"
            )
        if solver not in SOLVER_IDS:
            raise ConfigurationError(f"Unknown solver id {solver!r}; expected one of {SOLVER_IDS}")
        self.registry = registry
        self.regularization = regularization
        self.solver = solver
        self._grids: Dict[PairKind, Dict[ShellPairKey, Grid]] = {
            PairKind.ON_SITE: self._validate(PairKind.ON_SITE, on_site or {}),
            PairKind.OFF_SITE: self._validate(PairKind.OFF_SITE, off_site or {}),
        }
        self._check_conjugates()

    def _validate(self, pair_kind: PairKind, entries: Mapping[Any, Any]) -> Dict[ShellPairKey, Grid]:
        out: Dict[ShellPairKey, Grid] = {}
        for raw_key, grid in entries.items():
            key = ShellPairKey.coerce(raw_key)
            za, zb = key.species
            A, B = key.shells
            for z in (za, zb):
                if z not in self.registry:
                    raise ConfigurationError(f"{pair_kind.value} key {key}: species Z={z} is not declared")
            na = len(self.registry.shells(za))
            nb = len(self.registry.shells(zb))
            if not (0 <= A < na and 0 <= B < nb):
                raise ConfigurationError(f"{pair_kind.value} key {key}: shell index out of range")
            if pair_kind.is_on_site:
                if za != zb:
                    raise ConfigurationError(f"on-site key {key} mixes species")
                if A > B:
                    raise ConfigurationError(
                        f"on-site key {key} must have A <= B; the transposed block is implied"
                    )
            if key in out:
                raise ConfigurationError(f"Duplicate {pair_kind.value} key {key}")
            shape = (self.registry.shell(za, A).n, self.registry.shell(zb, B).n)
            out[key] = _coerce_grid(key, grid, shape)
        return out

    def _check_conjugates(self) -> None:
        grids = self._grids[PairKind.OFF_SITE]
        seen = set()
        for key, grid in grids.items():
            conj = key.conjugate
            if conj not in grids or conj in seen:
                continue
            seen.add(key)
            other = grids[conj]
            transposed = tuple(zip(*other)) if other else ()
            if tuple(tuple(r) for r in transposed) != grid:
                msg = (
                    f"off-site hyperparameters for {key} are not the transpose of those for {conj}; "
                    "predictions for the two orderings will be fit with different settings"
                )
                logger.warning(msg)
                warnings.warn(msg, HyperparameterSymmetryWarning, stacklevel=3)

    @classmethod
    def uniform(
        cls,
        registry: ShellBasisRegistry,
        *,
        on_site: Optional[HyperParameters] = None,
        off_site: Optional[HyperParameters] = None,
        regularization: str = "ridge",
        solver: str = "qr",
    ) -> "ParameterSpecification":
        """Declare every key enumerable from ``registry`` with shared settings."""
        on: Dict[ShellPairKey, List[List[HyperParameters]]] = {}
        off: Dict[ShellPairKey, List[List[HyperParameters]]] = {}
        species = registry.species
        if on_site is not None:
            for z in species:
                for A, B in registry.shell_pairs(z, z, on_site=True):
                    shape = (registry.shell(z, A).n, registry.shell(z, B).n)
                    on[ShellPairKey((z, z), (A, B))] = [[on_site] * shape[1] for _ in range(shape[0])]
        if off_site is not None:
            for za in species:
                for zb in species:
                    for A, B in registry.shell_pairs(za, zb, on_site=False):
                        shape = (registry.shell(za, A).n, registry.shell(zb, B).n)
                        off[ShellPairKey((za, zb), (A, B))] = [[off_site] * shape[1] for _ in range(shape[0])]
        return cls(registry, on, off, regularization=regularization, solver=solver)

    def shell_pair_keys(self, pair_kind: PairKind) -> List[ShellPairKey]:
        return sorted(self._grids[PairKind(pair_kind)])

    def grid(self, pair_kind: PairKind, shell_pair: Any) -> Grid:
        key = ShellPairKey.coerce(shell_pair)
        try:
            return self._grids[PairKind(pair_kind)][key]
        except KeyError:
            raise IllegalStateError(f"No {PairKind(pair_kind).value} hyperparameters declared for {key}") from None

    def hyperparameters(
        self, pair_kind: PairKind, shell_pair: Any, radial_pair: Sequence[int]
    ) -> HyperParameters:
        grid = self.grid(pair_kind, shell_pair)
        a, b = radial_pair
        if not (0 <= a < len(grid) and grid and 0 <= b < len(grid[0])):
            raise IllegalStateError(f"Radial pair {tuple(radial_pair)} outside grid of {shell_pair}")
        return grid[a][b]

    def model_keys(self, quantity: Quantity, pair_kind: PairKind) -> List[ModelKey]:
        quantity = Quantity(quantity)
        pair_kind = PairKind(pair_kind)
        if quantity is Quantity.S and pair_kind.is_on_site:
            # on-site overlap is the identity; nothing to fit
            return []
        keys: List[ModelKey] = []
        for sp in self.shell_pair_keys(pair_kind):
            grid = self._grids[pair_kind][sp]
            for a, row in enumerate(grid):
                for b in range(len(row)):
                    keys.append(ModelKey(quantity, pair_kind, sp.species, sp.shells, (a, b)))
        return keys

    def to_dict(self) -> Dict[str, Any]:
        def dump(pk: PairKind) -> List[Dict[str, Any]]:
            return [
                {
                    "species": list(k.species),
                    "shells": list(k.shells),
                    "grid": [[hp.to_dict() for hp in row] for row in g],
                }
                for k, g in sorted(self._grids[pk].items())
            ]

        return {
            "regularization": self.regularization,
            "solver": self.solver,
            "on_site": dump(PairKind.ON_SITE),
            "off_site": dump(PairKind.OFF_SITE),
        }

    @classmethod
    def from_dict(cls, registry: ShellBasisRegistry, data: Mapping[str, Any]) -> "ParameterSpecification":
        def parse(items: Sequence[Mapping[str, Any]]) -> Dict[ShellPairKey, Any]:
            return {ShellPairKey.coerce((e["species"], e["shells"])): e["grid"] for e in items}

        try:
            return cls(
                registry,
                parse(data.get("on_site", [])),
                parse(data.get("off_site", [])),
                regularization=data["regularization"],
                solver=data["solver"],
            )
        except KeyError as exc:
            raise ConfigurationError(f"Parameter specification is missing field {exc}") from None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParameterSpecification):
            return NotImplemented
        return (
            self.registry == other.registry
            and self.regularization == other.regularization
            and self.solver == other.solver
            and self._grids == other._grids
        )
