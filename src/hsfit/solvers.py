from __future__ import annotations

import logging
from typing import Protocol

import numpy as np
import torch
from scipy.sparse.linalg import lsqr

from .errors import ConfigurationError, SolverError
from .params.types import REGULARIZATION_KINDS, SOLVER_IDS

__all__ = ["LinearSolver", "LeastSquaresSolver"]

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

# LSQR stop codes: 3 = condition limit exceeded, 6 = cond(A) too large for
# machine precision, 7 = iteration limit reached
_LSQR_FAILED = {3: "condition limit exceeded", 6: "ill-conditioned to machine precision",
                7: "iteration limit reached"}


class LinearSolver(Protocol):
    def solve(self, X: Tensor, y: Tensor, kind: str, strength: float, solver_id: str) -> Tensor:
        ...


class LeastSquaresSolver:
    """Regularised least squares  min ||X c - y||^2 + lam ||W c||^2.

    Regularisation kinds:
        - none: W = 0
        - ridge: W = I
        - tikhonov: W = diag(||X[:, k]||), a column-scaled ridge that makes the
          penalty independent of feature magnitudes

    Solver ids:
        - qr: Householder QR of the augmented system [X; sqrt(lam) W]
        - direct: Cholesky factorisation of the normal equations
        - lsqr: SciPy LSQR with damping sqrt(lam) on the column-scaled system

    Singular or ill-posed systems, non-finite results and LSQR stops without
    convergence raise SolverError; degenerate coefficients are never returned.
    """

    def __init__(self, *, rcond: float = 1e-12, atol: float = 1e-12, btol: float = 1e-12,
                 conlim: float = 1e12, iter_lim: int | None = None) -> None:
        self.rcond = rcond
        self.atol = atol
        self.btol = btol
        self.conlim = conlim
        self.iter_lim = iter_lim

    def solve(self, X: Tensor, y: Tensor, kind: str, strength: float, solver_id: str) -> Tensor:
        if kind not in REGULARIZATION_KINDS:
            raise ConfigurationError(f"Unknown regularization kind {kind!r}")
        if solver_id not in SOLVER_IDS:
            raise ConfigurationError(f"Unknown solver id {solver_id!r}")
        X = torch.as_tensor(X, dtype=torch.float64)
        y = torch.as_tensor(y, dtype=torch.float64).reshape(-1)
        if X.ndim != 2 or X.shape[0] != y.shape[0]:
            raise SolverError(f"Design matrix {tuple(X.shape)} does not match targets {tuple(y.shape)}")
        if not (torch.isfinite(X).all() and torch.isfinite(y).all()):
            raise SolverError("Design matrix or targets contain non-finite values")
        lam = 0.0 if kind == "none" else float(strength)

        # Column scaling turns Tikhonov into plain ridge on x = w * c.
        if kind == "tikhonov":
            w = torch.linalg.norm(X, dim=0)
            w = torch.where(w > 0, w, torch.ones_like(w))
        else:
            w = torch.ones(X.shape[1], dtype=X.dtype)
        Xs = X / w

        if solver_id == "qr":
            x = self._qr(Xs, y, lam)
        elif solver_id == "direct":
            x = self._direct(Xs, y, lam)
        else:
            x = self._lsqr(Xs, y, lam)
        c = x / w
        if not torch.isfinite(c).all():
            raise SolverError("Solver produced non-finite coefficients")
        return c

    def _qr(self, X: Tensor, y: Tensor, lam: float) -> Tensor:
        n, p = X.shape
        if lam > 0:
            A = torch.cat([X, (lam ** 0.5) * torch.eye(p, dtype=X.dtype)], dim=0)
            b = torch.cat([y, torch.zeros(p, dtype=y.dtype)])
        else:
            A, b = X, y
        if A.shape[0] < p:
            raise SolverError(f"Underdetermined system: {A.shape[0]} equations for {p} unknowns")
        Q, R = torch.linalg.qr(A, mode="reduced")
        d = torch.abs(torch.diagonal(R))
        if p > 0 and d.min() <= self.rcond * max(float(d.max()), 1.0):
            raise SolverError(
                f"Singular system in QR (min |R_kk| = {float(d.min()):.3e}, max = {float(d.max()):.3e})"
            )
        rhs = (Q.T @ b).unsqueeze(-1)
        return torch.linalg.solve_triangular(R, rhs, upper=True).squeeze(-1)

    def _direct(self, X: Tensor, y: Tensor, lam: float) -> Tensor:
        p = X.shape[1]
        G = X.T @ X + lam * torch.eye(p, dtype=X.dtype)
        L, info = torch.linalg.cholesky_ex(G)
        if int(info) != 0:
            raise SolverError(f"Normal equations not positive definite (cholesky info={int(info)})")
        d = torch.diagonal(L)
        if p > 0 and float(d.min()) ** 2 <= self.rcond * max(float(d.max()) ** 2, 1.0):
            raise SolverError("Normal equations numerically singular")
        return torch.cholesky_solve((X.T @ y).unsqueeze(-1), L).squeeze(-1)

    def _lsqr(self, X: Tensor, y: Tensor, lam: float) -> Tensor:
        A = X.detach().cpu().numpy()
        b = y.detach().cpu().numpy()
        n, p = A.shape
        if lam == 0.0 and p > 0:
            # undamped LSQR returns a minimum-norm solution for rank-deficient systems
            if n < p:
                raise SolverError(f"Underdetermined system: {n} equations for {p} unknowns")
            s = np.linalg.svd(A, compute_uv=False)
            if s.min() <= self.rcond * max(float(s.max()), 1.0):
                raise SolverError(
                    f"Singular system in LSQR (min sigma = {float(s.min()):.3e}, max = {float(s.max()):.3e})"
                )
        # scipy defaults to 2 * n_columns iterations
        iter_lim = self.iter_lim if self.iter_lim is not None else 10 * max(p, 1)
        sol = lsqr(A, b, damp=float(np.sqrt(lam)), atol=self.atol, btol=self.btol,
                   conlim=self.conlim, iter_lim=iter_lim)
        istop, itn = int(sol[1]), int(sol[2])
        logger.debug("lsqr: istop=%d iterations=%d acond=%.3e", istop, itn, sol[6])
        if istop in _LSQR_FAILED:
            raise SolverError(f"LSQR did not converge: {_LSQR_FAILED[istop]} (istop={istop}, itn={itn})")
        return torch.from_numpy(np.asarray(sol[0], dtype=np.float64))
