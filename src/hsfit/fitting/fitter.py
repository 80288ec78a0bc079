from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import torch

from ..data.reference import ReferenceMatrixSource
from ..data.selector import DataSelector
from ..environment import AtomicEnvironmentSource
from ..errors import ConfigurationError, DataError, FittingError, IllegalStateError, SolverError
from ..features import BasisEvaluator
from ..models.bank import BlockModelBank
from ..models.submodel import ModelState, SubModel
from ..params.specification import ParameterSpecification
from ..params.types import ModelKey, PairKind, Quantity
from ..solvers import LinearSolver

__all__ = ["TrainingSet", "Fitter"]

logger = logging.getLogger(__name__)

Tensor = torch.Tensor


@dataclass(frozen=True)
class TrainingSet:
    X: Tensor  # (n_blocks * m, p) stacked design rows
    y: Tensor  # (n_blocks * m,) flattened target sub-blocks
    n_blocks: int


class Fitter:
    """Fit one sub-model per model key of a parameter specification.

    Keys are independent: each task gathers its own training blocks, builds
    its design matrix and solves, touching no shared mutable state. Results
    are inserted into the bank by the calling thread only, one complete
    record at a time, so an aborted fit leaves every inserted key intact.
    """

    def __init__(
        self,
        specification: ParameterSpecification,
        selection: DataSelector,
        reference: ReferenceMatrixSource,
        environments: AtomicEnvironmentSource,
        evaluator: BasisEvaluator,
        solver: LinearSolver,
        *,
        max_workers: Optional[int] = None,
    ) -> None:
        self.specification = specification
        self.selection = selection
        self.reference = reference
        self.environments = environments
        self.evaluator = evaluator
        self.solver = solver
        self.max_workers = max_workers

    def _ls(self, key: ModelKey) -> Tuple[int, int]:
        reg = self.specification.registry
        return reg.shell(key.species[0], key.shells[0]).l, reg.shell(key.species[1], key.shells[1]).l

    def training_data(self, key: ModelKey) -> TrainingSet:
        reg = self.specification.registry
        (za, zb), (A, B), (a, b) = key.species, key.shells, key.radials
        hyper = self.specification.hyperparameters(key.pair_kind, key.shell_pair, key.radials)
        ls = self._ls(key)
        rows = reg.radial_slice(za, A, a)
        cols = reg.radial_slice(zb, B, b)
        Xs: List[Tensor] = []
        ys: List[Tensor] = []
        for file, blocks in self.selection:
            atoms = self.reference.configuration(file)
            numbers = atoms.numbers
            for i, j in blocks:
                if i >= len(numbers) or j >= len(numbers):
                    raise DataError(f"{file!r}: block {(i, j)} outside configuration of {len(numbers)} atoms")
                if (int(numbers[i]), int(numbers[j])) != (za, zb):
                    continue
                env = self.environments.environment(atoms, (i, j), hyper.cutoff)
                target = self.reference.block(file, (i, j), key.quantity)[rows, cols]
                Xs.append(self.evaluator.features(env, ls, hyper))
                ys.append(target.reshape(-1).to(torch.float64))
        if not Xs:
            raise DataError(f"No selected block supplies training data for {key}")
        return TrainingSet(X=torch.cat(Xs, dim=0), y=torch.cat(ys), n_blocks=len(Xs))

    def fit_key(self, key: ModelKey) -> SubModel:
        hyper = self.specification.hyperparameters(key.pair_kind, key.shell_pair, key.radials)
        data = self.training_data(key)
        t0 = time.perf_counter()
        try:
            coef = self.solver.solve(
                data.X, data.y, self.specification.regularization,
                hyper.regularization_strength, self.specification.solver,
            )
        except SolverError as exc:
            raise FittingError(f"Fitting {key} failed: {exc}", [key]) from exc
        logger.debug(
            "fit %s: blocks=%d design=%s solve=%.3fs",
            key, data.n_blocks, tuple(data.X.shape), time.perf_counter() - t0,
        )
        return SubModel(key, hyper, self._ls(key), coef.detach().clone(), ModelState.FIT)

    def fit(
        self,
        quantity: Quantity,
        *,
        bank: Optional[BlockModelBank] = None,
        refit: bool = False,
        fail_fast: bool = True,
    ) -> BlockModelBank:
        """Fit every key of ``quantity`` for the selection's pair kind.

        - bank: existing bank to fill; a new one is created when omitted.
        - refit: allow replacing keys that are already fitted in ``bank``.
        - fail_fast: abort on the first FittingError (pending keys are
          cancelled); otherwise fit all keys and raise one FittingError
          listing every failure. Failed keys never receive coefficients.
        """
        quantity = Quantity(quantity)
        pair_kind: PairKind = self.selection.pair_kind
        if bank is None:
            bank = BlockModelBank(quantity, pair_kind)
        elif bank.tag != (quantity, pair_kind):
            raise ConfigurationError(
                f"Bank holds {bank.quantity.value}/{bank.pair_kind.value}, "
                f"fit requested {quantity.value}/{pair_kind.value}"
            )
        keys = self.specification.model_keys(quantity, pair_kind)
        if not keys:
            logger.info("No %s/%s sub-models to fit", quantity.value, pair_kind.value)
            return bank
        if not refit:
            fitted = [k for k in keys if (m := bank.get(k)) is not None and m.is_fitted]
            if fitted:
                raise IllegalStateError(
                    f"{len(fitted)} key(s) already fitted (first: {fitted[0]}); pass refit=True to replace them"
                )
        for key in keys:
            hyper = self.specification.hyperparameters(pair_kind, key.shell_pair, key.radials)
            bank.declare(key, hyper, self._ls(key))

        logger.info(
            "Fitting %d %s/%s sub-models from %d blocks in %d files",
            len(keys), quantity.value, pair_kind.value, self.selection.n_blocks, len(self.selection),
        )
        t0 = time.perf_counter()
        failures: Dict[ModelKey, FittingError] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self.fit_key, key): key for key in keys}
            try:
                for fut in as_completed(futures):
                    key = futures[fut]
                    try:
                        model = fut.result()
                    except FittingError as exc:
                        if fail_fast:
                            raise
                        logger.warning("%s", exc)
                        failures[key] = exc
                        continue
                    bank.insert(model, overwrite=True)
            except BaseException:
                for fut in futures:
                    fut.cancel()
                raise
        if failures:
            failed = [k for k in keys if k in failures]
            raise FittingError(
                f"{len(failed)} of {len(keys)} sub-models failed to fit: " + "; ".join(str(k) for k in failed),
                failed,
            )
        logger.info("Fitted %d sub-models in %.2fs", len(keys), time.perf_counter() - t0)
        return bank
