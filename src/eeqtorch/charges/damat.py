from __future__ import annotations

"""Derivatives of the EEQ Coulomb matrix contracted with a charge vector.

For charges q the builders return

  dadr[k, a]  = Σ_{m≠k} ∂J_km/∂R_a q_m    for a ≠ k, zero on the diagonal k = a
  atrace[k]   = Σ_{m≠k} ∂J_km/∂R_k q_m    (diagonal block, by translational invariance)
  dadL[k]     = Σ_m ∂J_km/∂ε q_m          (strain, symmetric 3×3)

Pair kernels are contracted with the partner charge as soon as they are
formed; the full ∂J tensor is never stored.
"""

import math
from typing import Tuple

import torch

from ..parallel import fan_out_reduce
from ..params.types import EEQParameters
from ..pbc.cell import cell_volume
from ..pbc.ewald import ewald_dir_deriv, ewald_rec_deriv, get_dir_trans, get_rec_trans
from ..pbc.wignerseitz import WignerSeitzCell
from ..structure import Structure
from .amat import _lower_mask

Tensor = torch.Tensor

__all__ = ["get_damat_0d", "get_damat_3d"]

SQRTPI = math.sqrt(math.pi)


def _zeros(nat: int, like: Tensor) -> Tuple[Tensor, Tensor, Tensor]:
    return (
        like.new_zeros(nat, nat, 3),  # dadr
        like.new_zeros(nat, 3, 3),    # dadL
        like.new_zeros(nat, 3),       # atrace
    )


def _accumulate(rows: Tensor, qvec: Tensor, dG: Tensor, dS: Tensor, nat: int) -> Tuple[Tensor, Tensor, Tensor]:
    """Scatter pair derivatives dG (b,nat,3) and dS (b,nat,3,3) of the pairs (i∈rows, j<i)."""
    dadr, dadL, atrace = _zeros(nat, dG)
    qi = qvec[rows]
    atrace[rows] += torch.einsum("j,bjx->bx", qvec, dG)
    atrace -= torch.einsum("b,bjx->jx", qi, dG)
    dadr[:, rows] += (dG * qi.view(-1, 1, 1)).transpose(0, 1)
    dadr[rows] -= dG * qvec.view(1, -1, 1)
    dadL += torch.einsum("b,bjxy->jxy", qi, dS)
    dadL[rows] += torch.einsum("j,bjxy->bxy", qvec, dS)
    return dadr, dadL, atrace


def get_damat_0d(
    params: EEQParameters,
    mol: Structure,
    qvec: Tensor,
    workers: int = 1,
) -> Tuple[Tensor, Tensor, Tensor]:
    """Position/strain derivatives of the isolated Coulomb matrix contracted with `qvec`.

    Returns (dadr (nat,nat,3), dadL (nat,3,3), atrace (nat,3)).
    """
    nat = mol.nat
    xyz = mol.positions
    rad = params.rad[mol.numbers].to(xyz)
    qvec = qvec[:nat]

    def build(rows: Tensor):
        vec = xyz[rows].unsqueeze(1) - xyz.unsqueeze(0)  # (b,nat,3), r_i - r_j
        r2 = torch.sum(vec * vec, dim=-1)
        mask = _lower_mask(rows, nat)
        r2 = torch.where(mask, r2, torch.ones_like(r2))
        gam = 1.0 / torch.sqrt(rad[rows].unsqueeze(1) ** 2 + rad.unsqueeze(0) ** 2)
        arg = gam * gam * r2
        dtmp = 2.0 * gam * torch.exp(-arg) / (SQRTPI * r2) - torch.erf(torch.sqrt(arg)) / (r2 * torch.sqrt(r2))
        dtmp = torch.where(mask, dtmp, torch.zeros_like(dtmp))
        dG = dtmp.unsqueeze(-1) * vec
        dS = dG.unsqueeze(-1) * vec.unsqueeze(-2)
        return _accumulate(rows, qvec, dG, dS, nat)

    return fan_out_reduce(nat, build, _zeros(nat, xyz), workers)


def get_damat_3d(
    params: EEQParameters,
    mol: Structure,
    wsc: WignerSeitzCell,
    alpha: float,
    qvec: Tensor,
    workers: int = 1,
) -> Tuple[Tensor, Tensor, Tensor]:
    """Ewald-summed counterpart of `get_damat_0d`.

    Self-image terms of each atom depend on the lattice only and therefore
    enter the strain derivative alone.
    """
    nat = mol.nat
    xyz = mol.positions
    rad = params.rad[mol.numbers].to(xyz)
    qvec = qvec[:nat]
    vol = cell_volume(mol.lattice)
    dtrans = get_dir_trans(mol.lattice)
    rtrans = get_rec_trans(mol.lattice)
    wsw = wsc.weights()

    def build(rows: Tensor):
        trans = wsc.pair_translations(rows)  # (b,nat,m,3)
        vec = (xyz[rows].unsqueeze(1) - xyz.unsqueeze(0)).unsqueeze(2) - trans
        gam = 1.0 / torch.sqrt(rad[rows].unsqueeze(1) ** 2 + rad.unsqueeze(0) ** 2)
        dGd, dSd = ewald_dir_deriv(vec, gam.unsqueeze(-1), alpha, dtrans)
        dGr, dSr = ewald_rec_deriv(vec, vol, alpha, rtrans)
        w = wsw[rows]
        dG = torch.sum((dGd + dGr) * w.unsqueeze(-1), dim=-2)
        dS = torch.sum((dSd + dSr) * w.view(*w.shape, 1, 1), dim=-3)
        mask = _lower_mask(rows, nat)
        dG = torch.where(mask.unsqueeze(-1), dG, torch.zeros_like(dG))
        dS = torch.where(mask.view(*mask.shape, 1, 1), dS, torch.zeros_like(dS))
        dadr, dadL, atrace = _accumulate(rows, qvec, dG, dS, nat)

        self_trans = wsc.self_translations(rows)  # (b,m,3)
        gam_self = 1.0 / torch.sqrt(2.0 * rad[rows] ** 2)
        _, dSd = ewald_dir_deriv(-self_trans, gam_self.unsqueeze(-1), alpha, dtrans)
        _, dSr = ewald_rec_deriv(-self_trans, vol, alpha, rtrans)
        w = wsw[rows, rows]
        dS = torch.sum((dSd + dSr) * w.view(*w.shape, 1, 1), dim=-3)
        dadL[rows] += dS * qvec[rows].view(-1, 1, 1)
        return dadr, dadL, atrace

    return fan_out_reduce(nat, build, _zeros(nat, xyz), workers)
