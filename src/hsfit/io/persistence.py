"""Model files: a parameter specification plus fitted model banks.

A model file is a NumPy ``.npz`` archive holding
    - ``__header__``: JSON text with `format_version`, the shell registry
      declaration, the full parameter specification and, per bank, its
      quantity, pair kind and one entry per sub-model
      (`key`, `ls`, `array`);
    - one float64 coefficient array per sub-model, named by its entry.
Everything needed for prediction is inside the file; no fitting data is
referenced.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple, Union

import numpy as np
import torch

from ..basis.shells import ShellBasisRegistry
from ..errors import ConfigurationError, IllegalStateError
from ..models.bank import BlockModelBank
from ..models.submodel import ModelState, SubModel
from ..params.specification import ParameterSpecification
from ..params.types import ModelKey, PairKind, Quantity

__all__ = ["FORMAT_VERSION", "save", "load", "load_all"]

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
_HEADER = "__header__"


def save(
    path: Union[str, Path],
    specification: ParameterSpecification,
    banks: Union[BlockModelBank, Iterable[BlockModelBank]],
) -> Path:
    """Write ``specification`` and ``banks`` to ``path`` (``.npz`` appended if missing)."""
    path = Path(path)
    if path.suffix != ".npz":
        path = path.with_name(path.name + ".npz")
    bank_list: List[BlockModelBank] = [banks] if isinstance(banks, BlockModelBank) else list(banks)
    tags = [b.tag for b in bank_list]
    if len(set(tags)) != len(tags):
        raise ConfigurationError("Cannot save two banks of the same quantity and pair kind")

    arrays: Dict[str, np.ndarray] = {}
    bank_headers: List[Dict[str, Any]] = []
    for bi, bank in enumerate(bank_list):
        entries: List[Dict[str, Any]] = []
        for mi, model in enumerate(bank):
            if not model.is_fitted:
                raise IllegalStateError(f"Cannot save unfitted sub-model {model.key}")
            spec_hp = specification.hyperparameters(model.key.pair_kind, model.key.shell_pair, model.key.radials)
            if spec_hp != model.hyper:
                raise ConfigurationError(f"Sub-model {model.key} was fit with hyperparameters not in the specification")
            name = f"coef_{bi:02d}_{mi:05d}"
            arrays[name] = model.coefficients.detach().cpu().numpy().astype(np.float64)
            entries.append({"key": model.key.to_list(), "ls": list(model.ls), "array": name})
        bank_headers.append({
            "quantity": bank.quantity.value,
            "pair_kind": bank.pair_kind.value,
            "models": entries,
        })

    header = {
        "format_version": FORMAT_VERSION,
        "registry": specification.registry.to_dict(),
        "specification": specification.to_dict(),
        "banks": bank_headers,
    }
    np.savez(path, **{_HEADER: np.array(json.dumps(header))}, **arrays)
    logger.info("Saved %d bank(s) with %d sub-models to %s", len(bank_list), len(arrays), path)
    return path


def load_all(
    path: Union[str, Path],
) -> Tuple[ParameterSpecification, Dict[Tuple[Quantity, PairKind], BlockModelBank]]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")
    with np.load(path, allow_pickle=False) as data:
        if _HEADER not in data:
            raise ConfigurationError(f"Not a model file: {path} (missing {_HEADER})")
        header = json.loads(str(data[_HEADER]))
        version = header.get("format_version")
        if version != FORMAT_VERSION:
            raise ConfigurationError(f"Unsupported model file version {version!r} in {path}")
        registry = ShellBasisRegistry.from_dict(header["registry"])
        spec = ParameterSpecification.from_dict(registry, header["specification"])
        banks: Dict[Tuple[Quantity, PairKind], BlockModelBank] = {}
        for bh in header["banks"]:
            bank = BlockModelBank(Quantity(bh["quantity"]), PairKind(bh["pair_kind"]))
            for entry in bh["models"]:
                key = ModelKey.from_list(entry["key"])
                if entry["array"] not in data:
                    raise ConfigurationError(f"{path}: coefficient array {entry['array']} missing for {key}")
                coef = torch.from_numpy(np.array(data[entry["array"]], dtype=np.float64))
                hyper = spec.hyperparameters(key.pair_kind, key.shell_pair, key.radials)
                ls = (int(entry["ls"][0]), int(entry["ls"][1]))
                bank.insert(SubModel(key, hyper, ls, coef, ModelState.LOADED))
            banks[bank.tag] = bank
    logger.info("Loaded %d bank(s) from %s", len(banks), path)
    return spec, banks


def load(path: Union[str, Path]) -> Tuple[ParameterSpecification, BlockModelBank]:
    """Load a single-bank model file; use ``load_all`` for files with several banks."""
    spec, banks = load_all(path)
    if len(banks) != 1:
        raise ConfigurationError(f"{path} holds {len(banks)} banks; use load_all()")
    return spec, next(iter(banks.values()))
