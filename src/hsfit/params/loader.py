from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

try:  # Python 3.11+
    import tomllib as _toml
except Exception:  # pragma: no cover - fallback to tomli if available
    import tomli as _toml  # type: ignore

from ..basis.shells import ShellBasisRegistry, as_species
from ..errors import ConfigurationError, IllegalStateError
from .specification import ParameterSpecification
from .types import HyperParameters, PairKind, ShellPairKey

__all__ = ["load_config", "parse_config"]

_OVERRIDE_FIELDS = ("cutoff", "max_degree", "correlation_order", "regularization_strength")


def load_config(path: str | Path) -> Tuple[ShellBasisRegistry, ParameterSpecification]:
    """
    Read a TOML model declaration into a registry and a parameter specification.

    Layout:
    - top level: `regularization`, `solver` (strings)
    - [basis]: one key per element symbol (or atomic number) -> list of [l, n]
    - [defaults.on_site] / [defaults.off_site]: the four hyperparameter fields;
      a missing table means no keys of that pair kind are declared.
    - [[on_site]] / [[off_site]]: overrides with `species = [a, b]`,
      `shells = [A, B]` and either scalar fields (broadcast over every radial
      pair of the key) or a full `grid` of inline tables.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"model configuration not found: {p}")
    with p.open("rb") as fh:
        try:
            data = _toml.load(fh)
        except _toml.TOMLDecodeError as exc:
            raise ConfigurationError(f"Malformed TOML in {p}: {exc}") from exc
    return parse_config(data)


def parse_config(data: Mapping[str, Any]) -> Tuple[ShellBasisRegistry, ParameterSpecification]:
    known = {"regularization", "solver", "basis", "defaults", "on_site", "off_site"}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown top-level configuration keys: {sorted(unknown)}")
    if "basis" not in data or not isinstance(data["basis"], Mapping):
        raise ConfigurationError("Configuration requires a [basis] table")
    basis: Dict[Any, Any] = {}
    for k, v in data["basis"].items():
        basis[int(k) if str(k).isdigit() else k] = v
    registry = ShellBasisRegistry(basis)

    defaults = data.get("defaults", {})
    if not isinstance(defaults, Mapping):
        raise ConfigurationError("[defaults] must be a table")
    unknown = set(defaults) - {"on_site", "off_site"}
    if unknown:
        raise ConfigurationError(f"Unknown [defaults] sections: {sorted(unknown)}")

    grids: Dict[PairKind, Dict[ShellPairKey, List[List[HyperParameters]]]] = {}
    for pk, name in ((PairKind.ON_SITE, "on_site"), (PairKind.OFF_SITE, "off_site")):
        default = defaults.get(name)
        base = HyperParameters.coerce(default) if default is not None else None
        grids[pk] = _default_grids(registry, pk, base)
        for entry in data.get(name, []):
            key, grid = _override(registry, pk, entry, grids[pk])
            grids[pk][key] = grid

    return registry, ParameterSpecification(
        registry,
        grids[PairKind.ON_SITE],
        grids[PairKind.OFF_SITE],
        regularization=str(data.get("regularization", "ridge")),
        solver=str(data.get("solver", "qr")),
    )


def _shape(registry: ShellBasisRegistry, key: ShellPairKey) -> Tuple[int, int]:
    (za, zb), (A, B) = key.species, key.shells
    return registry.shell(za, A).n, registry.shell(zb, B).n


def _default_grids(
    registry: ShellBasisRegistry, pair_kind: PairKind, base: HyperParameters | None
) -> Dict[ShellPairKey, List[List[HyperParameters]]]:
    out: Dict[ShellPairKey, List[List[HyperParameters]]] = {}
    if base is None:
        return out
    for za in registry.species:
        partners = (za,) if pair_kind.is_on_site else registry.species
        for zb in partners:
            for A, B in registry.shell_pairs(za, zb, on_site=pair_kind.is_on_site):
                key = ShellPairKey((za, zb), (A, B))
                na, nb = _shape(registry, key)
                out[key] = [[base] * nb for _ in range(na)]
    return out


def _override(
    registry: ShellBasisRegistry,
    pair_kind: PairKind,
    entry: Mapping[str, Any],
    current: Mapping[ShellPairKey, List[List[HyperParameters]]],
) -> Tuple[ShellPairKey, List[List[HyperParameters]]]:
    if not isinstance(entry, Mapping):
        raise ConfigurationError(f"[[{pair_kind.name.lower()}]] entries must be tables")
    unknown = set(entry) - {"species", "shells", "grid", *_OVERRIDE_FIELDS}
    if unknown:
        raise ConfigurationError(f"Unknown override fields: {sorted(unknown)}")
    try:
        za, zb = (as_species(z) for z in entry["species"])
        A, B = (int(s) for s in entry["shells"])
    except ConfigurationError:
        raise
    except KeyError as exc:
        raise ConfigurationError(f"Override entry missing {exc}") from None
    except (TypeError, ValueError):
        raise ConfigurationError(f"Override entry has malformed species/shells: {dict(entry)!r}") from None
    key = ShellPairKey((za, zb), (A, B))
    if "grid" in entry:
        if any(f in entry for f in _OVERRIDE_FIELDS):
            raise ConfigurationError(f"Override for {key} mixes `grid` with scalar fields")
        return key, entry["grid"]
    scalars = {f: entry[f] for f in _OVERRIDE_FIELDS if f in entry}
    if key in current:
        rows = current[key]
        return key, [[HyperParameters(**{**hp.to_dict(), **scalars}) for hp in row] for row in rows]
    # key not covered by defaults: every field must be given explicitly
    try:
        shape = _shape(registry, key)
    except IllegalStateError as exc:
        raise ConfigurationError(f"Override {key} names an undeclared shell: {exc}") from exc
    hp = HyperParameters.coerce(scalars)
    return key, [[hp] * shape[1] for _ in range(shape[0])]
