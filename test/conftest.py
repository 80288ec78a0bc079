import sys
from pathlib import Path

import numpy as np
import pytest
import torch
from ase import Atoms

# Ensure local src directory is importable as package root for hsfit
root = Path(__file__).resolve().parents[1]
src = root / 'src'
if str(src) not in sys.path:
    sys.path.insert(0, str(src))

from hsfit.basis.shells import ShellBasisRegistry
from hsfit.data.reference import DenseReferenceSource
from hsfit.environment import NeighbourEnvironmentSource
from hsfit.features import RadialInvariantBasis
from hsfit.models.bank import BlockModelBank
from hsfit.params.specification import ParameterSpecification
from hsfit.params.types import HyperParameters, PairKind, Quantity
from hsfit.predict.predictor import Predictor


@pytest.fixture(scope="session")
def registry():
    # H: two s radial functions + one p shell (5 orbitals); C: s + p (4 orbitals)
    return ShellBasisRegistry({"H": [(0, 2), (1, 1)], "C": [(0, 1), (1, 1)]})


@pytest.fixture(scope="session")
def hyper():
    # cutoff exceeds the largest distance in the 3 Å boxes used below
    return HyperParameters(cutoff=6.0, max_degree=2, correlation_order=1, regularization_strength=1e-12)


@pytest.fixture(scope="session")
def spec(registry, hyper):
    return ParameterSpecification.uniform(registry, on_site=hyper, off_site=hyper)


@pytest.fixture(scope="session")
def environments():
    return NeighbourEnvironmentSource()


@pytest.fixture(scope="session")
def evaluator():
    return RadialInvariantBasis()


@pytest.fixture(scope="session")
def make_random_bank(evaluator):
    def _make(spec, quantity, pair_kind, seed=0, skip=()):
        bank = BlockModelBank(quantity, pair_kind)
        gen = torch.Generator().manual_seed(seed)
        reg = spec.registry
        for key in spec.model_keys(quantity, pair_kind):
            if key in skip:
                continue
            hp = spec.hyperparameters(pair_kind, key.shell_pair, key.radials)
            ls = (reg.shell(key.species[0], key.shells[0]).l, reg.shell(key.species[1], key.shells[1]).l)
            p = evaluator.n_features(ls, hp, on_site=pair_kind.is_on_site)
            coef = torch.randn(p, generator=gen, dtype=torch.float64)
            bank.insert(bank.declare(key, hp, ls).with_coefficients(coef))
        return bank
    return _make


@pytest.fixture(scope="session")
def truth_banks(spec, make_random_bank):
    return [
        make_random_bank(spec, Quantity.H, PairKind.ON_SITE, seed=1),
        make_random_bank(spec, Quantity.H, PairKind.OFF_SITE, seed=2),
        make_random_bank(spec, Quantity.S, PairKind.OFF_SITE, seed=3),
    ]


@pytest.fixture(scope="session")
def truth_predictor(registry, truth_banks, environments, evaluator):
    return Predictor(registry, truth_banks, environments, evaluator)


@pytest.fixture(scope="session")
def configurations():
    rng = np.random.default_rng(7)
    return [Atoms("C3H3", positions=rng.uniform(0.0, 3.0, size=(6, 3))) for _ in range(8)]


@pytest.fixture(scope="session")
def reference(registry, configurations, truth_predictor):
    """Reference matrices generated by the ground-truth banks."""
    src = DenseReferenceSource(registry)
    for k, atoms in enumerate(configurations):
        H = truth_predictor.predict_matrix(atoms, Quantity.H)
        S = truth_predictor.predict_matrix(atoms, Quantity.S)
        src.add(f"cfg{k}", atoms, H=H, S=S)
    return src


@pytest.fixture(scope="session")
def files(configurations):
    return [f"cfg{k}" for k in range(len(configurations))]
