from __future__ import annotations

from dataclasses import dataclass
from typing import List

import torch

from .data.reference import ReferenceMatrixSource
from .data.selector import DataSelector
from .params.types import Quantity
from .predict.predictor import Predictor

__all__ = ["BlockErrors", "block_errors"]


@dataclass(frozen=True)
class BlockErrors:
    mae: float
    rmse: float
    max_abs: float
    n_blocks: int


def block_errors(
    predictor: Predictor,
    reference: ReferenceMatrixSource,
    selection: DataSelector,
    quantity: Quantity,
) -> BlockErrors:
    """Error of predicted against reference blocks over a selection.

    On-site blocks are compared as predicted; off-site blocks are compared
    after combining both orderings, i.e. the physical block.
    """
    quantity = Quantity(quantity)
    residuals: List[torch.Tensor] = []
    for file, blocks in selection:
        if not blocks:
            continue
        atoms = reference.configuration(file)
        if selection.pair_kind.is_on_site:
            preds = predictor.predict(atoms, [i for i, _ in blocks], quantity, selection.pair_kind)
        else:
            preds = predictor.predict_symmetric(atoms, list(blocks), quantity)
        for blk, pred in zip(blocks, preds):
            ref = reference.block(file, blk, quantity).to(pred.dtype)
            residuals.append((pred - ref).reshape(-1))
    if not residuals:
        return BlockErrors(mae=0.0, rmse=0.0, max_abs=0.0, n_blocks=0)
    r = torch.cat(residuals)
    return BlockErrors(
        mae=float(r.abs().mean()),
        rmse=float(torch.sqrt((r * r).mean())),
        max_abs=float(r.abs().max()),
        n_blocks=len(residuals),
    )
