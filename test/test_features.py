import pytest
import torch
from ase import Atoms

from hsfit.environment import NeighbourEnvironmentSource
from hsfit.features import RadialInvariantBasis
from hsfit.params.types import HyperParameters


@pytest.fixture
def atoms():
    return Atoms("CH3", positions=[[0, 0, 0], [1.1, 0, 0], [-0.3, 1.0, 0.2], [0.1, -0.4, 1.0]])


@pytest.mark.parametrize("ls", [(0, 0), (0, 1), (1, 2)])
@pytest.mark.parametrize("nu", [1, 2, 3])
def test_feature_shape_matches_n_features(atoms, ls, nu):
    hp = HyperParameters(cutoff=4.0, max_degree=3, correlation_order=nu, regularization_strength=0.0)
    basis = RadialInvariantBasis()
    src = NeighbourEnvironmentSource()
    m = (2 * ls[0] + 1) * (2 * ls[1] + 1)
    for block, on_site in (((0, 0), True), ((0, 1), False)):
        X = basis.features(src.environment(atoms, block, hp.cutoff), ls, hp)
        assert X.shape == (m, basis.n_features(ls, hp, on_site=on_site))


def test_rows_are_block_diagonal_copies_of_the_invariants(atoms):
    hp = HyperParameters(cutoff=4.0, max_degree=2, correlation_order=2, regularization_strength=0.0)
    basis = RadialInvariantBasis()
    env = NeighbourEnvironmentSource().environment(atoms, (0, 0), hp.cutoff)
    g = basis.invariants(env, hp)
    X = basis.features(env, (0, 1), hp)
    p = g.shape[0]
    for e in range(3):
        assert torch.equal(X[e, e * p:(e + 1) * p], g)
        assert X[e].abs().sum() == pytest.approx(g.abs().sum().item())


def test_features_are_deterministic_and_respect_cutoff(atoms):
    hp = HyperParameters(cutoff=1.5, max_degree=2, correlation_order=1, regularization_strength=0.0)
    basis = RadialInvariantBasis()
    src = NeighbourEnvironmentSource()
    far = atoms.copy()
    far.positions[3] = [0.0, 0.0, 2.0]
    env = src.environment(far, (0, 0), hp.cutoff)
    assert len(env.numbers) == 2
    assert torch.equal(basis.features(env, (1, 1), hp), basis.features(env, (1, 1), hp))
    farther = far.copy()
    farther.positions[3] = [0.0, 0.0, 5.0]
    env2 = src.environment(farther, (0, 0), hp.cutoff)
    assert torch.equal(basis.invariants(env, hp), basis.invariants(env2, hp))


def test_off_site_invariants_depend_on_bond_length(atoms):
    hp = HyperParameters(cutoff=4.0, max_degree=2, correlation_order=1, regularization_strength=0.0)
    basis = RadialInvariantBasis()
    src = NeighbourEnvironmentSource()
    g1 = basis.invariants(src.environment(atoms, (0, 1), hp.cutoff), hp)
    stretched = atoms.copy()
    stretched.positions[1] = [1.3, 0, 0]
    g2 = basis.invariants(src.environment(stretched, (0, 1), hp.cutoff), hp)
    assert g1.shape == g2.shape == (3 * 4,)
    assert not torch.allclose(g1, g2)


def test_isolated_atom_has_constant_invariants():
    hp = HyperParameters(cutoff=3.0, max_degree=2, correlation_order=2, regularization_strength=0.0)
    basis = RadialInvariantBasis()
    env = NeighbourEnvironmentSource().environment(Atoms("H"), (0, 0), hp.cutoff)
    g = basis.invariants(env, hp)
    assert g[0] == 1.0
    assert torch.count_nonzero(g[1:]) == 0
