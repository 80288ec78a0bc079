from __future__ import annotations

from typing import Dict, Iterator, List, Optional, Tuple

from ..errors import ConfigurationError, IllegalStateError
from ..params.types import HyperParameters, ModelKey, PairKind, Quantity
from .submodel import SubModel

__all__ = ["BlockModelBank"]


class BlockModelBank:
    """Sub-models of one (quantity, pair kind), keyed by ModelKey.

    Write phase: a single writer (the fitter's calling thread, or the loader)
    inserts complete records; each insert is one dict assignment. Read
    phase: predictors only call ``lookup`` and never mutate the bank.
    """

    def __init__(self, quantity: Quantity, pair_kind: PairKind) -> None:
        self.quantity = Quantity(quantity)
        self.pair_kind = PairKind(pair_kind)
        self._models: Dict[ModelKey, SubModel] = {}

    def __repr__(self) -> str:
        n_fit = sum(1 for m in self._models.values() if m.is_fitted)
        return (
            f"BlockModelBank({self.quantity.value}, {self.pair_kind.value}, "
            f"{n_fit}/{len(self._models)} fitted)"
        )

    @property
    def tag(self) -> Tuple[Quantity, PairKind]:
        return self.quantity, self.pair_kind

    def _check_key(self, key: ModelKey) -> None:
        if (key.quantity, key.pair_kind) != self.tag:
            raise ConfigurationError(
                f"Key {key} does not belong to a {self.quantity.value}/{self.pair_kind.value} bank"
            )
        if self.quantity is Quantity.S and self.pair_kind.is_on_site:
            raise ConfigurationError("On-site overlap blocks are the identity and hold no sub-models")

    def declare(self, key: ModelKey, hyper: HyperParameters, ls: Tuple[int, int]) -> SubModel:
        """Register an UNFIT record for ``key``; existing records are left alone."""
        self._check_key(key)
        if key in self._models:
            return self._models[key]
        model = SubModel(key, hyper, ls)
        self._models[key] = model
        return model

    def insert(self, model: SubModel, *, overwrite: bool = False) -> None:
        self._check_key(model.key)
        current = self._models.get(model.key)
        if current is not None and current.is_fitted and not overwrite:
            raise IllegalStateError(f"Sub-model {model.key} is already fitted; re-fit explicitly to replace it")
        self._models[model.key] = model

    def get(self, key: ModelKey) -> Optional[SubModel]:
        return self._models.get(key)

    def lookup(self, key: ModelKey) -> SubModel:
        model = self._models.get(key)
        if model is None:
            raise IllegalStateError(f"No sub-model for key {key}")
        if not model.is_fitted:
            raise IllegalStateError(f"Sub-model {key} is declared but not fitted")
        return model

    def keys(self) -> List[ModelKey]:
        return list(self._models)

    def fitted_keys(self) -> List[ModelKey]:
        return [k for k, m in self._models.items() if m.is_fitted]

    def max_cutoff(self) -> float:
        cutoffs = [m.hyper.cutoff for m in self._models.values() if m.is_fitted]
        return max(cutoffs) if cutoffs else 0.0

    def __contains__(self, key: object) -> bool:
        return key in self._models

    def __len__(self) -> int:
        return len(self._models)

    def __iter__(self) -> Iterator[SubModel]:
        return iter(list(self._models.values()))
