from __future__ import annotations

"""Error taxonomy for block-model fitting and prediction.

    - ConfigurationError: malformed shell declarations, hyperparameter grids,
      unknown solver / regularization identifiers. Raised at construction.
    - DataError: selection/file mismatches and reference blocks that cannot be
      extracted. Carries file and block identity in the message.
    - FittingError: solver failure for one or more model keys.
    - IllegalStateError: prediction against an unfit or missing sub-model.
    - SolverError: raised by linear solvers; the fitter re-raises it as
      FittingError with the offending key attached.
"""

from typing import Sequence, Tuple

__all__ = [
    "HSFitError",
    "ConfigurationError",
    "DataError",
    "FittingError",
    "IllegalStateError",
    "SolverError",
    "HyperparameterSymmetryWarning",
]


class HSFitError(Exception):
    pass


class ConfigurationError(HSFitError, ValueError):
    pass


class DataError(HSFitError, ValueError):
    pass


class IllegalStateError(HSFitError, RuntimeError):
    pass


class SolverError(HSFitError, RuntimeError):
    pass


class FittingError(HSFitError, RuntimeError):
    """Solver failure for one or more keys; ``keys`` lists them in fit order."""

    def __init__(self, message: str, keys: Sequence[object] = ()) -> None:
        super().__init__(message)
        self.keys: Tuple[object, ...] = tuple(keys)


class HyperparameterSymmetryWarning(UserWarning):
    pass
