import threading

import pytest
import torch
from ase import Atoms

from hsfit.errors import IllegalStateError
from hsfit.params.types import ModelKey, PairKind, Quantity
from hsfit.predict.predictor import Predictor, symmetrize_off_site


@pytest.fixture(scope="module")
def atoms(configurations):
    return configurations[0]


def test_on_site_overlap_is_identity_without_any_bank(registry, atoms, environments, evaluator):
    predictor = Predictor(registry, [], environments, evaluator)
    blocks = predictor.predict(atoms, [0, 4], Quantity.S, PairKind.ON_SITE)
    assert torch.equal(blocks[0], torch.eye(4, dtype=torch.float64))
    assert torch.equal(blocks[1], torch.eye(5, dtype=torch.float64))
    with pytest.raises(IllegalStateError, match="model bank"):
        predictor.predict(atoms, [0], Quantity.H, PairKind.ON_SITE)


def test_missing_or_unfit_sub_model_raises(spec, registry, atoms, environments, evaluator, make_random_bank):
    missing = ModelKey(Quantity.H, PairKind.OFF_SITE, (6, 1), (1, 0), (0, 1))
    bank = make_random_bank(spec, Quantity.H, PairKind.OFF_SITE, skip=(missing,))
    predictor = Predictor(registry, [bank], environments, evaluator)
    # carbon-carbon pairs do not need the missing key
    predictor.predict(atoms, [(0, 1)], Quantity.H, PairKind.OFF_SITE)
    with pytest.raises(IllegalStateError, match="No sub-model"):
        predictor.predict(atoms, [(0, 3)], Quantity.H, PairKind.OFF_SITE)
    bank.declare(missing, spec.hyperparameters(PairKind.OFF_SITE, missing.shell_pair, missing.radials), (1, 0))
    with pytest.raises(IllegalStateError, match="not fitted"):
        predictor.predict(atoms, [(0, 3)], Quantity.H, PairKind.OFF_SITE)


def test_raw_off_site_blocks_have_per_ordering_shapes(truth_predictor, atoms):
    ij, ji = truth_predictor.predict(atoms, [(0, 3), (3, 0)], Quantity.H, PairKind.OFF_SITE)
    assert ij.shape == (4, 5) and ji.shape == (5, 4)
    # independent sub-models: raw orderings are not transposes of each other
    assert not torch.allclose(ij, ji.T)


def test_symmetric_blocks_are_exact_transposes(truth_predictor, atoms):
    pairs = [(0, 3), (3, 0), (1, 2), (2, 1)]
    b03, b30, b12, b21 = truth_predictor.predict_symmetric(atoms, pairs, Quantity.H)
    assert torch.equal(b03, b30.T)
    assert torch.equal(b12, b21.T)
    ij, ji = truth_predictor.predict(atoms, [(0, 3), (3, 0)], Quantity.H, PairKind.OFF_SITE)
    assert torch.equal(b03, symmetrize_off_site(ij, ji))


def test_request_order_is_preserved(registry, truth_banks, environments, evaluator, atoms):
    parallel = Predictor(registry, truth_banks, environments, evaluator, max_workers=4)
    serial = Predictor(registry, truth_banks, environments, evaluator, max_workers=1)
    request = [5, 0, 3, 1]
    a = parallel.predict(atoms, request, Quantity.H, PairKind.ON_SITE)
    b = [serial.predict(atoms, [i], Quantity.H, PairKind.ON_SITE)[0] for i in request]
    assert [t.shape for t in a] == [(5, 5), (4, 4), (5, 5), (4, 4)]
    for x, y in zip(a, b):
        assert torch.equal(x, y)


class _CountingEnvironments:
    def __init__(self, inner):
        self.inner = inner
        self.calls = []
        self._lock = threading.Lock()

    def environment(self, configuration, block, cutoff):
        with self._lock:
            self.calls.append((tuple(block), cutoff))
        return self.inner.environment(configuration, block, cutoff)


def test_sub_models_fan_out_with_one_environment_per_block(registry, truth_banks, truth_predictor,
                                                           environments, evaluator, atoms):
    counting = _CountingEnvironments(environments)
    predictor = Predictor(registry, truth_banks, counting, evaluator, max_workers=8)
    pairs = [(0, 3), (4, 1), (0, 3)]
    blocks = predictor.predict(atoms, pairs, Quantity.H, PairKind.OFF_SITE)
    # 6 C-H or H-C sub-models per block share one environment at the uniform cutoff
    assert sorted(counting.calls) == [((0, 3), 6.0), ((4, 1), 6.0)]
    expected = truth_predictor.predict(atoms, pairs, Quantity.H, PairKind.OFF_SITE)
    for x, y in zip(blocks, expected):
        assert torch.equal(x, y)


def test_on_site_off_diagonal_shell_pairs_are_mirrored(truth_predictor, registry, atoms):
    (blk,) = truth_predictor.predict(atoms, [3], Quantity.H, PairKind.ON_SITE)
    # hydrogen: s radials in rows 0..1, p shell in rows 2..4
    s, p = registry.shell_slice(1, 0), registry.shell_slice(1, 1)
    assert torch.equal(blk[p, s], blk[s, p].T)


def test_full_matrix_is_symmetric_with_identity_overlap_diagonal(truth_predictor, atoms):
    H = truth_predictor.predict_matrix(atoms, Quantity.H)
    S = truth_predictor.predict_matrix(atoms, "S")
    assert H.shape == S.shape == (3 * 4 + 3 * 5, 3 * 4 + 3 * 5)
    assert torch.allclose(H, H.T, rtol=0, atol=1e-14)
    assert torch.allclose(S, S.T, rtol=0, atol=1e-14)
    assert torch.equal(S[:4, :4], torch.eye(4, dtype=torch.float64))


def test_full_matrix_drops_pairs_beyond_cutoff(truth_predictor):
    atoms = Atoms("CH", positions=[[0, 0, 0], [0, 0, 4.0]])
    H = truth_predictor.predict_matrix(atoms, Quantity.H, cutoff=3.0)
    assert torch.count_nonzero(H[:4, 4:]) == 0
    assert torch.count_nonzero(truth_predictor.predict_matrix(atoms, Quantity.H)[:4, 4:]) > 0


def test_invalid_requests(truth_predictor, atoms):
    with pytest.raises(IllegalStateError):
        truth_predictor.predict(atoms, [(0, 0)], Quantity.H, PairKind.OFF_SITE)
    with pytest.raises(IllegalStateError):
        truth_predictor.predict(atoms, [(0, 1)], Quantity.H, PairKind.ON_SITE)
    with pytest.raises(IllegalStateError, match="outside"):
        truth_predictor.predict(atoms, [6], Quantity.H, PairKind.ON_SITE)
    with pytest.raises(IllegalStateError, match="Z=8"):
        truth_predictor.predict(Atoms("OH", positions=[[0, 0, 0], [1, 0, 0]]), [0], "H", "on-site")
    assert truth_predictor.predict(atoms, [], Quantity.H, PairKind.ON_SITE) == []


def test_duplicate_banks_and_mismatched_shapes(registry, truth_banks, environments, evaluator):
    with pytest.raises(ValueError):
        Predictor(registry, [truth_banks[0], truth_banks[0]], environments, evaluator)
    with pytest.raises(ValueError):
        symmetrize_off_site(torch.zeros(4, 5), torch.zeros(4, 5))
