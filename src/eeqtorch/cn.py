from __future__ import annotations

import math
from typing import Callable, Dict, Optional, Protocol, Tuple

import torch
import torch.nn.functional as F

from .params.types import NCoordParameters
from .pbc.cell import build_lattice_translations, to_cart, to_frac
from .structure import Structure

Tensor = torch.Tensor

__all__ = [
    "NCoord",
    "GeometricNCoord",
    "erf_count",
    "derf_count",
    "exp_count",
    "dexp_count",
]


def erf_count(r: Tensor, r0: Tensor, kcn: float) -> Tensor:
    """0.5 [1 + erf(−k (r/r0 − 1))]"""
    return 0.5 * (1.0 + torch.erf(-kcn * (r / r0 - 1.0)))


def derf_count(r: Tensor, r0: Tensor, kcn: float) -> Tensor:
    return -kcn / math.sqrt(math.pi) / r0 * torch.exp(-(kcn**2) * (r - r0) ** 2 / r0**2)


def exp_count(r: Tensor, r0: Tensor, kcn: float) -> Tensor:
    """1 / [1 + exp(−k (r0/r − 1))]"""
    return 1.0 / (1.0 + torch.exp(-kcn * (r0 / r - 1.0)))


def dexp_count(r: Tensor, r0: Tensor, kcn: float) -> Tensor:
    expterm = torch.exp(-kcn * (r0 / r - 1.0))
    return (-kcn * r0 * expterm) / (r**2 * ((expterm + 1.0) ** 2))


_COUNTING: Dict[str, Tuple[Callable[..., Tensor], Callable[..., Tensor]]] = {
    "erf": (erf_count, derf_count),
    "exp": (exp_count, dexp_count),
}


class NCoord(Protocol):
    """Coordination-number engine used by the EEQ solver."""

    def get_cn(self, mol: Structure, gradient: bool = False) -> Tuple[Tensor, Optional[Tensor], Optional[Tensor]]:
        """Return CN (nat,) and, with `gradient`, dCN/dR (nat,nat,3) and dCN/dε (nat,3,3)."""
        ...


class GeometricNCoord:
    """Fractional coordination number from a distance counting function.

    CN_i = Σ_{j,T} count(|r_i − r_j − T|, rcov_i + rcov_j), summed over lattice
    translations T within `cutoff` (only T = 0 for molecules), self term
    excluded. With `cn_max` the result is smoothly capped,

      CN ← ln(1 + e^{cn_max}) − ln(1 + e^{cn_max − CN}).

    Derivative layout: dcndr[i, a, :] = ∂CN_i/∂R_a, dcndL[i] = ∂CN_i/∂ε.
    """

    def __init__(self, params: NCoordParameters) -> None:
        if params.counting not in _COUNTING:
            raise ValueError(f"Unknown counting function {params.counting!r}; expected one of {tuple(_COUNTING)}")
        if params.cutoff <= 0.0:
            raise ValueError("CN cutoff must be > 0")
        self.params = params
        self._count, self._dcount = _COUNTING[params.counting]

    def _translations(self, mol: Structure) -> Tensor:
        if not mol.is_periodic:
            return mol.positions.new_zeros(1, 3)
        return build_lattice_translations(self.params.cutoff, mol.lattice, mol.periodic)

    def get_cn(self, mol: Structure, gradient: bool = False) -> Tuple[Tensor, Optional[Tensor], Optional[Tensor]]:
        xyz = mol.positions
        nat = mol.nat
        rcov = self.params.rcov.to(xyz)[mol.numbers]
        r0 = rcov.unsqueeze(1) + rcov.unsqueeze(0)  # (nat,nat)
        kcn = float(self.params.steepness)
        cutoff = float(self.params.cutoff)
        eps = math.sqrt(torch.finfo(xyz.dtype).eps)

        cn = xyz.new_zeros(nat)
        dcndr = xyz.new_zeros(nat, nat, 3) if gradient else None
        dcndL = xyz.new_zeros(nat, 3, 3) if gradient else None
        rij0 = xyz.unsqueeze(1) - xyz.unsqueeze(0)  # r_i - r_j
        if mol.is_periodic:
            # reduce pair vectors to the reference cell along periodic directions
            offset = torch.round(to_frac(rij0, mol.lattice)) * mol.periodic.to(rij0)
            rij0 = rij0 - to_cart(offset, mol.lattice)
        for T in self._translations(mol):
            rij = rij0 - T
            r = torch.linalg.vector_norm(rij, dim=-1)
            mask = (r > eps) & (r <= cutoff)
            rs = torch.where(mask, r, torch.ones_like(r))
            cn += torch.sum(torch.where(mask, self._count(rs, r0, kcn), torch.zeros_like(r)), dim=-1)
            if gradient:
                dc = torch.where(mask, self._dcount(rs, r0, kcn) / rs, torch.zeros_like(r))
                dG = dc.unsqueeze(-1) * rij  # (nat,nat,3)
                dcndr[torch.arange(nat), torch.arange(nat)] += torch.sum(dG, dim=1)
                dcndr -= dG
                dcndL += torch.einsum("ij,ijx,ijy->ixy", dc, rij, rij)

        if self.params.cn_max is not None:
            cmax = float(self.params.cn_max)
            dcap = torch.sigmoid(cmax - cn)
            cn = F.softplus(cn.new_tensor(cmax)) - F.softplus(cmax - cn)
            if gradient:
                dcndr = dcndr * dcap.view(-1, 1, 1)
                dcndL = dcndL * dcap.view(-1, 1, 1)
        return cn, dcndr, dcndL
