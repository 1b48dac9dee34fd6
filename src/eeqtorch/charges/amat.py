from __future__ import annotations

"""Augmented Coulomb matrix of the EEQ model.

    [ J   1 ] [ q ] = [ x ]
    [ 1ᵀ  0 ] [ λ ]   [ Q ]

J couples Gaussian charge distributions of width rad_A,

  J_AB = erf(γ_AB R_AB)/R_AB,  γ_AB = 1/sqrt(rad_A² + rad_B²),
  J_AA = η_A + sqrt(2/π)/rad_A,

and is lattice-summed with Ewald in periodic systems. The last row/column
carries the total-charge constraint through the Lagrange multiplier λ.
"""

import math

import torch

from ..parallel import fan_out_reduce
from ..params.types import EEQParameters
from ..pbc.cell import cell_volume
from ..pbc.ewald import ewald_dir, ewald_rec, get_dir_trans, get_rec_trans
from ..pbc.wignerseitz import WignerSeitzCell
from ..structure import Structure

Tensor = torch.Tensor

__all__ = ["get_amat_0d", "get_amat_3d", "set_constraint"]

SQRT2PI = math.sqrt(2.0 / math.pi)
SQRTPI = math.sqrt(math.pi)


def set_constraint(amat: Tensor, nat: int) -> Tensor:
    """Write the charge-conservation border into an (nat+1, nat+1) matrix."""
    amat[nat, : nat + 1] = 1.0
    amat[: nat + 1, nat] = 1.0
    amat[nat, nat] = 0.0
    return amat


def _lower_mask(rows: Tensor, nat: int) -> Tensor:
    """(b,nat) mask selecting partners j < i for the outer atoms i in `rows`."""
    cols = torch.arange(nat, device=rows.device)
    return cols.unsqueeze(0) < rows.unsqueeze(1)


def get_amat_0d(params: EEQParameters, mol: Structure, workers: int = 1) -> Tensor:
    """Augmented interaction matrix for an isolated structure."""
    nat = mol.nat
    xyz = mol.positions
    rad = params.rad[mol.numbers].to(xyz)
    eta = params.eta[mol.numbers].to(xyz)

    def build(rows: Tensor):
        local = xyz.new_zeros(nat + 1, nat + 1)
        vec = xyz.unsqueeze(0) - xyz[rows].unsqueeze(1)  # (b,nat,3), r_j - r_i
        r2 = torch.sum(vec * vec, dim=-1)
        gam = 1.0 / (rad[rows].unsqueeze(1) ** 2 + rad.unsqueeze(0) ** 2)
        tmp = torch.erf(torch.sqrt(r2 * gam)) / torch.sqrt(r2)
        tmp = torch.where(_lower_mask(rows, nat), tmp, torch.zeros_like(tmp))
        local[rows, :nat] += tmp
        local[:nat, rows] += tmp.T
        local[rows, rows] += eta[rows] + SQRT2PI / rad[rows]
        return (local,)

    (amat,) = fan_out_reduce(nat, build, (xyz.new_zeros(nat + 1, nat + 1),), workers)
    return set_constraint(amat, nat)


def get_amat_3d(
    params: EEQParameters,
    mol: Structure,
    wsc: WignerSeitzCell,
    alpha: float,
    workers: int = 1,
) -> Tensor:
    """Augmented interaction matrix for a periodic structure (Ewald summation)."""
    nat = mol.nat
    xyz = mol.positions
    rad = params.rad[mol.numbers].to(xyz)
    eta = params.eta[mol.numbers].to(xyz)
    vol = cell_volume(mol.lattice)
    dtrans = get_dir_trans(mol.lattice)
    rtrans = get_rec_trans(mol.lattice)
    wsw = wsc.weights()  # (nat,nat,m)

    def build(rows: Tensor):
        local = xyz.new_zeros(nat + 1, nat + 1)
        # pairs j < i over all minimum images
        trans = wsc.pair_translations(rows)  # (b,nat,m,3)
        vec = (xyz[rows].unsqueeze(1) - xyz.unsqueeze(0)).unsqueeze(2) - trans
        gam = 1.0 / torch.sqrt(rad[rows].unsqueeze(1) ** 2 + rad.unsqueeze(0) ** 2)
        dtmp = ewald_dir(vec, gam.unsqueeze(-1), alpha, dtrans)
        rtmp = ewald_rec(vec, vol, alpha, rtrans)
        tmp = torch.sum((dtmp + rtmp) * wsw[rows], dim=-1)
        tmp = torch.where(_lower_mask(rows, nat), tmp, torch.zeros_like(tmp))
        local[rows, :nat] += tmp
        local[:nat, rows] += tmp.T

        # interaction with the atom's own periodic images
        self_trans = wsc.self_translations(rows)  # (b,m,3)
        gam_self = 1.0 / torch.sqrt(2.0 * rad[rows] ** 2)
        dtmp = ewald_dir(-self_trans, gam_self.unsqueeze(-1), alpha, dtrans)
        rtmp = ewald_rec(-self_trans, vol, alpha, rtrans)
        diag = torch.sum((dtmp + rtmp) * wsw[rows, rows], dim=-1)
        local[rows, rows] += diag + eta[rows] + SQRT2PI / rad[rows] - 2.0 * alpha / SQRTPI
        return (local,)

    (amat,) = fan_out_reduce(nat, build, (xyz.new_zeros(nat + 1, nat + 1),), workers)
    return set_constraint(amat, nat)
