from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from ..environment import Environment
from ..errors import IllegalStateError
from ..features import BasisEvaluator
from ..params.types import HyperParameters, ModelKey

__all__ = ["ModelState", "SubModel"]

Tensor = torch.Tensor


class ModelState(str, enum.Enum):
    UNFIT = "unfit"
    FIT = "fit"
    LOADED = "loaded"


@dataclass(frozen=True)
class SubModel:
    """Regression unit for one (shell pair, radial pair) sub-block.

    ls holds the angular momenta of the two shells; the predicted block has
    shape (2l_A+1, 2l_B+1). Records are immutable: fitting produces a new
    record rather than mutating an UNFIT one.
    """

    key: ModelKey
    hyper: HyperParameters
    ls: Tuple[int, int]
    coefficients: Optional[Tensor] = None
    state: ModelState = ModelState.UNFIT

    def __post_init__(self) -> None:
        if (self.coefficients is None) != (self.state is ModelState.UNFIT):
            raise IllegalStateError(
                f"Sub-model {self.key}: state {self.state.value} inconsistent with coefficients"
            )

    @property
    def shape(self) -> Tuple[int, int]:
        return 2 * self.ls[0] + 1, 2 * self.ls[1] + 1

    @property
    def is_fitted(self) -> bool:
        return self.state is not ModelState.UNFIT

    def with_coefficients(self, coefficients: Tensor, state: ModelState = ModelState.FIT) -> "SubModel":
        return SubModel(self.key, self.hyper, self.ls, coefficients.detach().clone(), state)

    def predict(self, environment: Environment, evaluator: BasisEvaluator) -> Tensor:
        if self.coefficients is None:
            raise IllegalStateError(f"Sub-model {self.key} has not been fitted")
        X = evaluator.features(environment, self.ls, self.hyper)
        if X.shape[-1] != self.coefficients.shape[0]:
            raise IllegalStateError(
                f"Sub-model {self.key}: evaluator yields {X.shape[-1]} features, "
                f"model holds {self.coefficients.shape[0]} coefficients"
            )
        return (X @ self.coefficients.to(X.dtype)).reshape(self.shape)
