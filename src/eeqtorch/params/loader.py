from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Mapping

import numpy as _np
import torch
from ase.data import atomic_numbers as _atomic_numbers

try:  # Python 3.11+
    import tomllib as _toml
except Exception:  # pragma: no cover - fallback to tomli if available
    import tomli as _toml  # type: ignore

from .eeq2019 import CHI_2019, COV_RAD_D3, CN_CUTOFF, CN_MAX, ETA_2019, KCN_2019, KCN_EEQ, RAD_2019
from .types import EEQParameters, NCoordParameters

__all__ = [
    "default_eeq_params",
    "default_ncoord_params",
    "load_eeq_params",
    "load_ncoord_params",
    "parse_element_key",
]

_FIELDS = ("chi", "eta", "kcn", "rad")
_COUNTING = ("erf", "exp")


def default_eeq_params() -> EEQParameters:
    """EEQ 2019 parameters for H–Rn."""
    return EEQParameters(rad=RAD_2019.clone(), chi=CHI_2019.clone(), eta=ETA_2019.clone(), kcn=KCN_2019.clone())


def default_ncoord_params() -> NCoordParameters:
    return NCoordParameters(rcov=COV_RAD_D3.clone(), counting="erf", steepness=KCN_EEQ, cutoff=CN_CUTOFF, cn_max=CN_MAX)


def parse_element_key(key: str) -> int:
    """Map a TOML element key ("8", "O", "o") to its atomic number."""
    s = str(key).strip()
    if re.fullmatch(r"[0-9]+", s):
        z = int(s)
    else:
        z = _atomic_numbers.get(s.capitalize(), 0)
    if z <= 0:
        raise ValueError(f"Unknown element key in EEQ parameter file: {key!r}")
    return z


def _read_toml(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"EEQ parameter file not found: {p}")
    with p.open("rb") as fh:
        return _toml.load(fh)


def load_eeq_params(path: str | Path) -> EEQParameters:
    """
    Parse an EEQ parameter TOML file.

    Expected layout (atomic units)::

        [element.H]
        chi = 1.23695041
        eta = -0.35015861
        kcn = 0.04916110
        rad = 0.55159092

    Element tables may be keyed by symbol or atomic number. All four fields are
    required for every listed element; elements not listed are stored as NaN so
    that a structure containing them is rejected by ``EEQModel.check_species``.
    """
    data = _read_toml(path)
    table = data.get("element")
    if not isinstance(table, Mapping) or not table:
        raise ValueError(f"No [element.*] tables in EEQ parameter file {path}")
    rows: Dict[int, _np.ndarray] = {}
    for key, entry in table.items():
        z = parse_element_key(key)
        if z in rows:
            raise ValueError(f"Duplicate entry for atomic number Z={z}")
        missing = [f for f in _FIELDS if f not in entry]
        if missing:
            raise ValueError(f"Element {key!r} is missing EEQ fields: {', '.join(missing)}")
        rows[z] = _np.array([float(entry[f]) for f in _FIELDS], dtype=_np.float64)
    zmax = max(rows)
    arr = _np.full((zmax + 1, len(_FIELDS)), _np.nan, dtype=_np.float64)
    arr[0] = 0.0
    for z, row in rows.items():
        arr[z] = row
    t = torch.from_numpy(arr)
    chi, eta, kcn, rad = (t[:, i].clone() for i in range(len(_FIELDS)))
    return EEQParameters(rad=rad, chi=chi, eta=eta, kcn=kcn)


def load_ncoord_params(path: str | Path) -> NCoordParameters:
    """
    Read the optional ``[ncoord]`` table of an EEQ parameter file.

    Keys: ``counting`` ("erf" | "exp"), ``steepness``, ``cutoff`` (Bohr),
    ``cn_max`` (omit or set negative to disable the cap) and ``rcov`` as a
    table of element -> radius (Bohr) overriding the D3 covalent radii.
    Missing keys fall back to the EEQ 2019 coordination number.
    """
    data = _read_toml(path)
    ref = default_ncoord_params()
    sect = data.get("ncoord")
    if sect is None:
        return ref
    counting = str(sect.get("counting", ref.counting)).lower()
    if counting not in _COUNTING:
        raise ValueError(f"ncoord.counting must be one of {_COUNTING}, got {counting!r}")
    cutoff = float(sect.get("cutoff", ref.cutoff))
    if cutoff <= 0.0:
        raise ValueError("ncoord.cutoff must be > 0")
    cn_max = sect.get("cn_max", ref.cn_max)
    if cn_max is not None and float(cn_max) < 0.0:
        cn_max = None
    rcov = ref.rcov.clone()
    for key, value in dict(sect.get("rcov", {})).items():
        z = parse_element_key(key)
        if z >= rcov.shape[0]:
            grown = torch.full((z + 1,), float("nan"), dtype=rcov.dtype)
            grown[: rcov.shape[0]] = rcov
            rcov = grown
        rcov[z] = float(value)
    return NCoordParameters(
        rcov=rcov,
        counting=counting,  # type: ignore[arg-type]
        steepness=float(sect.get("steepness", ref.steepness)),
        cutoff=cutoff,
        cn_max=None if cn_max is None else float(cn_max),
    )
