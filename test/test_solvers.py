import pytest
import torch

from hsfit.errors import ConfigurationError, SolverError
from hsfit.solvers import LeastSquaresSolver


@pytest.fixture
def problem():
    gen = torch.Generator().manual_seed(11)
    X = torch.randn(40, 6, generator=gen, dtype=torch.float64)
    X[:, 2] *= 50.0
    y = torch.randn(40, generator=gen, dtype=torch.float64)
    return X, y


def _closed_form(X, y, lam, w=None):
    w = torch.ones(X.shape[1], dtype=X.dtype) if w is None else w
    G = X.T @ X + lam * torch.diag(w * w)
    return torch.linalg.solve(G, X.T @ y)


@pytest.mark.parametrize("solver_id", ["qr", "direct", "lsqr"])
def test_ridge_matches_closed_form(problem, solver_id):
    X, y = problem
    c = LeastSquaresSolver().solve(X, y, "ridge", 1e-3, solver_id)
    assert torch.allclose(c, _closed_form(X, y, 1e-3), rtol=1e-7, atol=1e-9)


@pytest.mark.parametrize("solver_id", ["qr", "direct", "lsqr"])
def test_tikhonov_scales_penalty_by_column_norms(problem, solver_id):
    X, y = problem
    c = LeastSquaresSolver().solve(X, y, "tikhonov", 1e-2, solver_id)
    expected = _closed_form(X, y, 1e-2, w=torch.linalg.norm(X, dim=0))
    assert torch.allclose(c, expected, rtol=1e-7, atol=1e-9)


@pytest.mark.parametrize("solver_id", ["qr", "direct"])
def test_unregularised_fit_recovers_exact_coefficients(problem, solver_id):
    X, _ = problem
    c_true = torch.arange(6, dtype=torch.float64) - 2.5
    c = LeastSquaresSolver().solve(X, X @ c_true, "none", 123.0, solver_id)
    assert torch.allclose(c, c_true, rtol=1e-8, atol=1e-10)


@pytest.mark.parametrize("solver_id", ["qr", "direct", "lsqr"])
def test_singular_system_raises(problem, solver_id):
    X, y = problem
    X = torch.cat([X, X[:, :1]], dim=1)
    with pytest.raises(SolverError):
        LeastSquaresSolver().solve(X, y, "none", 0.0, solver_id)


def test_regularisation_resolves_singular_system(problem):
    X, y = problem
    X = torch.cat([X, X[:, :1]], dim=1)
    c = LeastSquaresSolver().solve(X, y, "ridge", 1e-2, "qr")
    # both copies of the duplicated column share the weight equally
    assert c[0] == pytest.approx(c[-1].item(), rel=1e-8)


@pytest.mark.parametrize("solver_id", ["qr", "lsqr"])
def test_underdetermined_system_raises(solver_id):
    X = torch.ones(2, 5, dtype=torch.float64)
    with pytest.raises(SolverError, match="Underdetermined"):
        LeastSquaresSolver().solve(X, torch.ones(2, dtype=torch.float64), "none", 0.0, solver_id)


def test_damped_lsqr_accepts_rank_deficient_design(problem):
    X, y = problem
    X = torch.cat([X, X[:, :1]], dim=1)
    c = LeastSquaresSolver().solve(X, y, "ridge", 1e-2, "lsqr")
    assert c[0] == pytest.approx(c[-1].item(), rel=1e-6)


def test_lsqr_iteration_limit_raises(problem):
    X, y = problem
    with pytest.raises(SolverError, match="istop=7"):
        LeastSquaresSolver(iter_lim=1).solve(X, y, "ridge", 1e-3, "lsqr")


def test_invalid_inputs(problem):
    X, y = problem
    solver = LeastSquaresSolver()
    with pytest.raises(ConfigurationError):
        solver.solve(X, y, "lasso", 1.0, "qr")
    with pytest.raises(ConfigurationError):
        solver.solve(X, y, "ridge", 1.0, "svd")
    with pytest.raises(SolverError):
        solver.solve(X, y[:-1], "ridge", 1.0, "qr")
    bad = y.clone()
    bad[3] = float("nan")
    with pytest.raises(SolverError, match="non-finite"):
        solver.solve(X, bad, "ridge", 1.0, "direct")
