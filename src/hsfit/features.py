from __future__ import annotations
"""Basis evaluators producing per-sub-block design rows.

The evaluator contract maps an environment, the angular momenta (l_A, l_B)
of the sub-block and its hyperparameters to a design matrix with one row
per sub-block element ((2l_A+1)(2l_B+1) rows, row-major over the block).
A sub-model's prediction is ``features @ coefficients`` reshaped to the
block.

RadialInvariantBasis is the reference evaluator shipped with the package:
    - one-particle radial sums A_k = sum_n x_n^k (1 - x_n^2)^2, x = r / r_cut,
      k = 0..max_degree;
    - all products of A_k up to ``correlation_order`` factors, plus a
      constant;
    - off-site blocks multiply these by bond-length powers (|r_ij| / r_cut)^k;
    - each block element gets its own coefficient set (block-diagonal rows).
It is rotationally invariant, not equivariant; equivariant expansions plug
in through the same contract.
"""

from itertools import combinations_with_replacement
from math import comb
from typing import Protocol, Tuple

import torch

from .environment import Environment
from .params.types import HyperParameters

__all__ = ["BasisEvaluator", "RadialInvariantBasis"]

Tensor = torch.Tensor


class BasisEvaluator(Protocol):
    def features(self, environment: Environment, ls: Tuple[int, int], hyper: HyperParameters) -> Tensor:
        ...


class RadialInvariantBasis:
    def __init__(self, dtype: torch.dtype = torch.float64) -> None:
        self.dtype = dtype

    def invariants(self, environment: Environment, hyper: HyperParameters) -> Tensor:
        K = hyper.max_degree
        x = environment.distances.to(self.dtype) / hyper.cutoff
        x = x[x < 1.0]
        env = (1.0 - x * x) ** 2
        powers = torch.arange(K + 1, dtype=self.dtype)
        A = (x.unsqueeze(-1) ** powers * env.unsqueeze(-1)).sum(dim=0)  # (K+1,)
        terms = [torch.ones((), dtype=self.dtype)]
        for order in range(1, hyper.correlation_order + 1):
            for combo in combinations_with_replacement(range(K + 1), order):
                terms.append(torch.prod(A[list(combo)]))
        g = torch.stack(terms)
        if not environment.on_site:
            b = torch.linalg.norm(environment.bond.to(self.dtype)) / hyper.cutoff
            g = torch.outer(b ** powers, g).reshape(-1)
        return g

    def n_features(self, ls: Tuple[int, int], hyper: HyperParameters, on_site: bool) -> int:
        K = hyper.max_degree
        n = 1
        for order in range(1, hyper.correlation_order + 1):
            n += _n_multisets(K + 1, order)
        if not on_site:
            n *= K + 1
        return n * (2 * ls[0] + 1) * (2 * ls[1] + 1)

    def features(self, environment: Environment, ls: Tuple[int, int], hyper: HyperParameters) -> Tensor:
        g = self.invariants(environment, hyper)
        m = (2 * ls[0] + 1) * (2 * ls[1] + 1)
        eye = torch.eye(m, dtype=self.dtype)
        return torch.kron(eye, g.unsqueeze(0))  # (m, m * len(g))


def _n_multisets(n: int, k: int) -> int:
    return comb(n + k - 1, k)
