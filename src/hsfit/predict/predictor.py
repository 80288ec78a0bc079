from __future__ import annotations
"""Dense atom-block prediction from a bank of fitted sub-models.

Assembly rules per requested block (i, j):
    - on-site S: identity of the atom's orbital count (no sub-model lookup);
    - on-site H: sub-block (A, a | B, b) for every A <= B; for A < B the
      transpose is also written at (B, b | A, a); diagonal shell pairs place
      every radial pair directly;
    - off-site: every ordered (A, B) is written at (A, B); no symmetry is
      imposed, the result is the raw one-sided prediction.

Physical off-site blocks need both orderings:
    block(i, j) = (raw(i, j) + raw(j, i)^T) / 2
``symmetrize_off_site`` implements the combination and ``predict_symmetric``
composes it with two ``predict`` calls.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import torch
from ase import Atoms

from ..basis.shells import ShellBasisRegistry
from ..environment import AtomicEnvironmentSource, Environment
from ..errors import IllegalStateError
from ..features import BasisEvaluator
from ..models.bank import BlockModelBank
from ..models.submodel import SubModel
from ..params.types import ModelKey, PairKind, Quantity

__all__ = ["Predictor", "symmetrize_off_site"]

logger = logging.getLogger(__name__)

Tensor = torch.Tensor
Block = Tuple[int, int]


def symmetrize_off_site(raw_ij: Tensor, raw_ji: Tensor) -> Tensor:
    """Combine the two one-sided predictions of an atom pair.

    The result satisfies combined(i, j) == combined(j, i).T exactly.
    """
    if raw_ij.shape != raw_ji.T.shape:
        raise ValueError(
            f"raw(i,j) shape {tuple(raw_ij.shape)} incompatible with raw(j,i) shape {tuple(raw_ji.shape)}"
        )
    return (raw_ij + raw_ji.T) / 2


@dataclass(frozen=True)
class _SubBlockTask:
    index: int  # position in the request
    block: Block
    model: SubModel
    rows: slice
    cols: slice
    mirror: bool


class Predictor:
    """Evaluate banks of sub-models on atomic configurations.

    Banks are read-only here. Sub-model lookups happen up front; environment
    construction (once per block and cutoff) and every sub-model evaluation
    of every requested block then run concurrently on a thread pool, and the
    calling thread assembles the dense blocks.
    """

    def __init__(
        self,
        registry: ShellBasisRegistry,
        banks: Union[Iterable[BlockModelBank], Mapping[Tuple[Quantity, PairKind], BlockModelBank]],
        environments: AtomicEnvironmentSource,
        evaluator: BasisEvaluator,
        *,
        max_workers: Optional[int] = None,
        dtype: torch.dtype = torch.float64,
    ) -> None:
        self.registry = registry
        items = banks.values() if isinstance(banks, Mapping) else banks
        self.banks: Dict[Tuple[Quantity, PairKind], BlockModelBank] = {}
        for bank in items:
            if bank.tag in self.banks:
                raise ValueError(f"Duplicate bank for {bank.quantity.value}/{bank.pair_kind.value}")
            self.banks[bank.tag] = bank
        self.environments = environments
        self.evaluator = evaluator
        self.max_workers = max_workers
        self.dtype = dtype

    def _bank(self, quantity: Quantity, pair_kind: PairKind) -> BlockModelBank:
        try:
            return self.banks[(quantity, pair_kind)]
        except KeyError:
            raise IllegalStateError(f"No {quantity.value}/{pair_kind.value} model bank loaded") from None

    def _species(self, configuration: Atoms, i: int) -> int:
        if not 0 <= i < len(configuration):
            raise IllegalStateError(f"Atom index {i} outside configuration of {len(configuration)} atoms")
        z = int(configuration.numbers[i])
        if z not in self.registry:
            raise IllegalStateError(f"Atom {i} has species Z={z} with no declared shells")
        return z

    def predict(
        self,
        configuration: Atoms,
        blocks: Sequence[Union[int, Block]],
        quantity: Quantity,
        pair_kind: PairKind,
    ) -> List[Tensor]:
        """Dense blocks for ``blocks`` in request order (raw for off-site)."""
        quantity = Quantity(quantity)
        pair_kind = PairKind(pair_kind)
        requested: List[Block] = []
        for b in blocks:
            if pair_kind.is_on_site:
                i = int(b) if not isinstance(b, (tuple, list)) else int(b[0])
                if isinstance(b, (tuple, list)) and int(b[1]) != i:
                    raise IllegalStateError(f"On-site request {tuple(b)} must pair an atom with itself")
                requested.append((i, i))
            else:
                i, j = int(b[0]), int(b[1])
                if i == j:
                    raise IllegalStateError(f"Off-site request {(i, j)} pairs an atom with itself")
                requested.append((i, j))
        if not requested:
            return []
        if quantity is Quantity.S and pair_kind.is_on_site:
            return [torch.eye(self.registry.n_orbitals(self._species(configuration, i)), dtype=self.dtype)
                    for i, _ in requested]

        bank = self._bank(quantity, pair_kind)
        outs: List[Tensor] = []
        tasks: List[_SubBlockTask] = []
        for n, blk in enumerate(requested):
            out, block_tasks = self._plan_block(configuration, n, blk, bank)
            outs.append(out)
            tasks.extend(block_tasks)

        # environments are shared by every sub-model of a block with the same cutoff
        needed = sorted({(t.block, t.model.hyper.cutoff) for t in tasks})

        def build(item: Tuple[Block, float]) -> Environment:
            return self.environments.environment(configuration, item[0], item[1])

        def evaluate(task: _SubBlockTask) -> Tensor:
            return task.model.predict(envs[(task.block, task.model.hyper.cutoff)], self.evaluator)

        if self.max_workers == 1 or len(tasks) <= 1:
            envs = {item: build(item) for item in needed}
            subs = [evaluate(t) for t in tasks]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                envs = dict(zip(needed, pool.map(build, needed)))
                subs = list(pool.map(evaluate, tasks))

        for task, sub in zip(tasks, subs):
            sub = sub.to(self.dtype)
            out = outs[task.index]
            out[task.rows, task.cols] = sub
            if task.mirror:
                out[task.cols, task.rows] = sub.T
        return outs

    def _plan_block(
        self, configuration: Atoms, index: int, block: Block, bank: BlockModelBank
    ) -> Tuple[Tensor, List[_SubBlockTask]]:
        """Zero block for ``block`` and one task per (shell pair, radial pair) sub-model."""
        i, j = block
        za, zb = self._species(configuration, i), self._species(configuration, j)
        on_site = bank.pair_kind.is_on_site
        out = torch.zeros((self.registry.n_orbitals(za), self.registry.n_orbitals(zb)), dtype=self.dtype)
        tasks: List[_SubBlockTask] = []
        for A, B in self.registry.shell_pairs(za, zb, on_site=on_site):
            sa, sb = self.registry.shell(za, A), self.registry.shell(zb, B)
            for a in range(sa.n):
                for b in range(sb.n):
                    key = ModelKey(bank.quantity, bank.pair_kind, (za, zb), (A, B), (a, b))
                    tasks.append(_SubBlockTask(
                        index=index,
                        block=block,
                        model=bank.lookup(key),
                        rows=self.registry.radial_slice(za, A, a),
                        cols=self.registry.radial_slice(zb, B, b),
                        mirror=on_site and A != B,
                    ))
        return out, tasks

    def predict_symmetric(
        self, configuration: Atoms, pairs: Sequence[Block], quantity: Quantity
    ) -> List[Tensor]:
        """Physical off-site blocks: both raw orderings combined per pair."""
        pairs = [(int(i), int(j)) for i, j in pairs]
        raw = self.predict(configuration, pairs + [(j, i) for i, j in pairs], quantity, PairKind.OFF_SITE)
        n = len(pairs)
        return [symmetrize_off_site(raw[k], raw[n + k]) for k in range(n)]

    def predict_matrix(
        self, configuration: Atoms, quantity: Quantity, *, cutoff: Optional[float] = None
    ) -> Tensor:
        """Full dense matrix of ``configuration`` for ``quantity``.

        Symmetrised on-site blocks fill the diagonal; symmetrised off-site blocks fill every
        atom pair closer than ``cutoff`` (default: the largest cutoff in the
        off-site bank). Other pairs are zero. Periodic images are not summed.
        """
        quantity = Quantity(quantity)
        nat = len(configuration)
        sizes = [self.registry.n_orbitals(self._species(configuration, i)) for i in range(nat)]
        offsets = [0]
        for n in sizes:
            offsets.append(offsets[-1] + n)
        M = torch.zeros((offsets[-1], offsets[-1]), dtype=self.dtype)

        diag = self.predict(configuration, list(range(nat)), quantity, PairKind.ON_SITE)
        for i, blk in enumerate(diag):
            # diagonal shell pairs are fit per radial ordering; symmetrise them here
            M[offsets[i]:offsets[i + 1], offsets[i]:offsets[i + 1]] = (blk + blk.T) / 2

        if nat > 1:
            if cutoff is None:
                cutoff = self._bank(quantity, PairKind.OFF_SITE).max_cutoff()
            dist = torch.as_tensor(configuration.get_all_distances(mic=bool(configuration.pbc.any())))
            pairs = [(i, j) for i in range(nat) for j in range(i + 1, nat) if float(dist[i, j]) < cutoff]
            logger.debug("predict_matrix: %d atoms, %d off-site pairs within %.3f", nat, len(pairs), cutoff)
            if pairs:
                for (i, j), blk in zip(pairs, self.predict_symmetric(configuration, pairs, quantity)):
                    M[offsets[i]:offsets[i + 1], offsets[j]:offsets[j + 1]] = blk
                    M[offsets[j]:offsets[j + 1], offsets[i]:offsets[i + 1]] = blk.T
        return M
