from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Sequence, Tuple, Union

from ..basis.shells import as_species
from ..errors import ConfigurationError

__all__ = [
    "Quantity",
    "PairKind",
    "HyperParameters",
    "ShellPairKey",
    "ModelKey",
    "REGULARIZATION_KINDS",
    "SOLVER_IDS",
]

REGULARIZATION_KINDS = ("none", "ridge", "tikhonov")
SOLVER_IDS = ("qr", "direct", "lsqr")


class Quantity(str, enum.Enum):
    H = "H"
    S = "S"


class PairKind(str, enum.Enum):
    ON_SITE = "on-site"
    OFF_SITE = "off-site"

    @property
    def is_on_site(self) -> bool:
        return self is PairKind.ON_SITE


_HP_FIELDS = ("cutoff", "max_degree", "correlation_order", "regularization_strength")


@dataclass(frozen=True)
class HyperParameters:
    cutoff: float
    max_degree: int
    correlation_order: int
    regularization_strength: float

    def __post_init__(self) -> None:
        if not (isinstance(self.cutoff, (int, float)) and math.isfinite(self.cutoff) and self.cutoff > 0):
            raise ConfigurationError(f"cutoff must be a positive finite number, got {self.cutoff!r}")
        if int(self.max_degree) != self.max_degree or self.max_degree < 0:
            raise ConfigurationError(f"max_degree must be a non-negative integer, got {self.max_degree!r}")
        if int(self.correlation_order) != self.correlation_order or self.correlation_order < 1:
            raise ConfigurationError(
                f"correlation_order must be an integer >= 1, got {self.correlation_order!r}"
            )
        lam = self.regularization_strength
        if not (isinstance(lam, (int, float)) and math.isfinite(lam) and lam >= 0):
            raise ConfigurationError(f"regularization_strength must be >= 0, got {lam!r}")
        object.__setattr__(self, "cutoff", float(self.cutoff))
        object.__setattr__(self, "max_degree", int(self.max_degree))
        object.__setattr__(self, "correlation_order", int(self.correlation_order))
        object.__setattr__(self, "regularization_strength", float(lam))

    @classmethod
    def coerce(cls, value: Union["HyperParameters", Mapping[str, Any], Sequence[Any]]) -> "HyperParameters":
        if isinstance(value, HyperParameters):
            return value
        if isinstance(value, Mapping):
            unknown = set(value) - set(_HP_FIELDS)
            if unknown:
                raise ConfigurationError(f"Unknown hyperparameter field(s): {sorted(unknown)}")
            missing = [f for f in _HP_FIELDS if f not in value]
            if missing:
                raise ConfigurationError(f"Missing hyperparameter field(s): {missing}")
            return cls(**{f: value[f] for f in _HP_FIELDS})
        if isinstance(value, (tuple, list)) and len(value) == 4:
            return cls(*value)
        raise ConfigurationError(f"Cannot interpret {value!r} as hyperparameters")

    def to_dict(self) -> Dict[str, Any]:
        return {f: getattr(self, f) for f in _HP_FIELDS}


@dataclass(frozen=True, order=True)
class ShellPairKey:
    species: Tuple[int, int]
    shells: Tuple[int, int]

    @classmethod
    def coerce(cls, value: Union["ShellPairKey", Sequence[Sequence[int]]]) -> "ShellPairKey":
        if isinstance(value, ShellPairKey):
            return value
        try:
            (za, zb), (a, b) = value
            species = (as_species(za), as_species(zb))
            shells = (int(a), int(b))
        except ConfigurationError:
            raise
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Shell-pair key must be ((z_a, z_b), (A, B)), got {value!r}"
            ) from None
        return cls(species=species, shells=shells)

    @property
    def conjugate(self) -> "ShellPairKey":
        return ShellPairKey(
            species=(self.species[1], self.species[0]),
            shells=(self.shells[1], self.shells[0]),
        )

    def __str__(self) -> str:
        return f"Z{self.species} shells{self.shells}"


@dataclass(frozen=True)
class ModelKey:
    """Tagged key of one sub-model: what it predicts and which sub-block."""

    quantity: Quantity
    pair_kind: PairKind
    species: Tuple[int, int]
    shells: Tuple[int, int]
    radials: Tuple[int, int]

    @property
    def shell_pair(self) -> ShellPairKey:
        return ShellPairKey(self.species, self.shells)

    def __str__(self) -> str:
        return (
            f"{self.quantity.value}/{self.pair_kind.value} Z{self.species} "
            f"shells{self.shells} radials{self.radials}"
        )

    def to_list(self) -> list:
        return [self.quantity.value, self.pair_kind.value, list(self.species),
                list(self.shells), list(self.radials)]

    @classmethod
    def from_list(cls, data: Sequence[Any]) -> "ModelKey":
        q, pk, sp, sh, rd = data
        return cls(Quantity(q), PairKind(pk), (int(sp[0]), int(sp[1])),
                   (int(sh[0]), int(sh[1])), (int(rd[0]), int(rd[1])))
