from __future__ import annotations

"""Electronegativity equilibration (EEQ) charges, energies and derivatives.

The EEQ energy of Gaussian charges q,

    E(q) = Σ_A q_A (−x_A) + ½ qᵀ J q,    x_A = −χ_A + κ_A √CN_A,

is minimised subject to Σ q_A = Q, which gives the augmented linear system

    [ J   1 ] [ q ] = [ x ]
    [ 1ᵀ  0 ] [ λ ]   [ Q ].

The matrix is symmetric indefinite and is factorised with Bunch–Kaufman
pivoting (LDLᵀ). Since q is stationary, nuclear and strain derivatives of E
only need ∂J and ∂x (Hellmann–Feynman); charge responses dq/dR and dq/dε
follow from implicit differentiation, A dq = dx − dA q, and need A⁻¹.

Reference: E. Caldeweyher et al., J. Chem. Phys. 150, 154122 (2019).
"""

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Optional

import torch

from ..cn import GeometricNCoord, NCoord
from ..errors import FactorizationError, InversionError, SolveError
from ..params.loader import default_eeq_params, default_ncoord_params, load_eeq_params, load_ncoord_params
from ..params.types import EEQParameters, NCoordParameters
from ..pbc.ewald import get_alpha
from ..pbc.wignerseitz import WignerSeitzCell
from ..structure import Structure
from .amat import get_amat_0d, get_amat_3d
from .damat import get_damat_0d, get_damat_3d
from .rhs import get_vrhs

Tensor = torch.Tensor

__all__ = ["EEQModel", "EEQResult", "SolveFlags"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SolveFlags:
    """Which optional outputs a solve produces, fixed once at entry."""

    has_cn_derivative: bool
    needs_energy: bool
    needs_gradient: bool
    needs_response: bool

    @classmethod
    def from_request(
        cls,
        dcndr: Optional[Tensor],
        dcndL: Optional[Tensor],
        energy: bool,
        gradient: bool,
        response: bool,
    ) -> "SolveFlags":
        dcn = dcndr is not None and dcndL is not None
        return cls(
            has_cn_derivative=dcn,
            needs_energy=bool(energy),
            needs_gradient=bool(gradient) and dcn,
            needs_response=bool(response) and dcn,
        )

    @property
    def needs_derivatives(self) -> bool:
        return self.needs_gradient or self.needs_response


@dataclass
class EEQResult:
    charges: Tensor                    # (nat,)
    energy: Optional[Tensor] = None    # (nat,) atom-resolved electrostatic energy
    gradient: Optional[Tensor] = None  # (nat,3) dE/dR
    sigma: Optional[Tensor] = None     # (3,3) dE/dε
    dqdr: Optional[Tensor] = None      # (nat,nat,3), [i, a] = dq_i/dR_a
    dqdL: Optional[Tensor] = None      # (nat,3,3), [i] = dq_i/dε


class EEQModel:
    """EEQ charge model: species parameters plus a coordination-number engine."""

    def __init__(self, params: EEQParameters, ncoord: Optional[NCoord] = None) -> None:
        self.params = params
        self.ncoord = ncoord if ncoord is not None else GeometricNCoord(default_ncoord_params())

    @classmethod
    def param2019(cls, ncoord: Optional[NCoordParameters] = None) -> "EEQModel":
        """EEQ model of Caldeweyher et al. (2019) with its erf-counted, capped CN."""
        return cls(default_eeq_params(), GeometricNCoord(ncoord or default_ncoord_params()))

    @classmethod
    def from_file(cls, path: str | Path) -> "EEQModel":
        """Model from a TOML parameter file (element tables plus optional [ncoord])."""
        return cls(load_eeq_params(path), GeometricNCoord(load_ncoord_params(path)))

    def check_species(self, numbers: Tensor) -> None:
        """Raise ValueError if any atomic number lacks parameters."""
        z = numbers.long()
        zmax = self.params.max_number
        bad = sorted({int(v) for v in z.tolist() if v < 1 or v > zmax})
        if not bad:
            vals = torch.stack([self.params.chi[z], self.params.eta[z], self.params.kcn[z], self.params.rad[z]])
            bad = sorted({int(v) for v in z[~torch.isfinite(vals).all(dim=0)].tolist()})
        if bad:
            raise ValueError(f"Missing EEQ parameters for Z={bad}")

    def evaluate(
        self,
        mol: Structure,
        *,
        energy: bool = True,
        gradient: bool = False,
        response: bool = False,
        workers: int = 1,
    ) -> EEQResult:
        """Compute CN with the model's engine and solve for charges and the requested outputs."""
        cn, dcndr, dcndL = self.ncoord.get_cn(mol, gradient=gradient or response)
        return self.solve(mol, cn, dcndr, dcndL, energy=energy, gradient=gradient, response=response, workers=workers)

    def solve(
        self,
        mol: Structure,
        cn: Tensor,
        dcndr: Optional[Tensor] = None,
        dcndL: Optional[Tensor] = None,
        *,
        energy: bool = False,
        gradient: bool = False,
        response: bool = False,
        workers: int = 1,
    ) -> EEQResult:
        """Solve the EEQ system of `mol` for the given coordination numbers.

        Gradient and response outputs are produced only when both CN
        derivatives are supplied. Raises FactorizationError, InversionError
        or SolveError when the linear algebra fails; nothing is returned then.
        """
        flags = SolveFlags.from_request(dcndr, dcndL, energy, gradient, response)
        nat = mol.nat
        ndim = nat + 1
        logger.debug(
            "EEQ solve: nat=%d periodic=%s energy=%s gradient=%s response=%s",
            nat, mol.is_periodic, flags.needs_energy, flags.needs_gradient, flags.needs_response,
        )

        wsc = None
        alpha = 0.0
        if mol.is_periodic:
            wsc = WignerSeitzCell.new(mol.positions, mol.lattice)
            alpha = get_alpha(mol.lattice)

        xvec, dxdcn = get_vrhs(self.params, mol, cn.to(mol.positions), with_derivative=flags.needs_derivatives)
        if mol.is_periodic:
            amat = get_amat_3d(self.params, mol, wsc, alpha, workers=workers)
        else:
            amat = get_amat_0d(self.params, mol, workers=workers)

        LD, pivots, info = torch.linalg.ldl_factor_ex(amat)
        if int(info) != 0 or not bool(torch.isfinite(LD).all()):
            raise FactorizationError("Bunch-Kaufman factorization failed.")

        ainv = None
        if flags.needs_response:
            eye = torch.eye(ndim, dtype=amat.dtype, device=amat.device)
            ainv = torch.linalg.ldl_solve(LD, pivots, eye)
            if not bool(torch.isfinite(ainv).all()):
                raise InversionError("Inversion of factorized matrix failed.")
            # only the lower triangle is trusted; mirror it to the upper one
            ainv = torch.tril(ainv) + torch.tril(ainv, diagonal=-1).T
            vrhs = ainv @ xvec
        else:
            vrhs = torch.linalg.ldl_solve(LD, pivots, xvec.unsqueeze(-1)).squeeze(-1)
            if not bool(torch.isfinite(vrhs).all()):
                raise SolveError("Solution of linear system failed.")
        if nat == 1:
            # the constraint alone fixes the charge of a single atom
            vrhs[0] = mol.charge

        qvec = vrhs[:nat]
        result = EEQResult(charges=qvec.clone())

        if flags.needs_energy:
            result.energy = qvec * (0.5 * (amat[:nat, :nat] @ qvec) - xvec[:nat])

        if not flags.needs_derivatives:
            return result

        if mol.is_periodic:
            dadr, dadL, atrace = get_damat_3d(self.params, mol, wsc, alpha, qvec, workers=workers)
        else:
            dadr, dadL, atrace = get_damat_0d(self.params, mol, qvec, workers=workers)
        # CN chain term, −(dx/dCN) ⊙ q
        chain = -dxdcn[:nat] * qvec

        if flags.needs_gradient:
            result.gradient = torch.einsum("kax,k->ax", dadr, qvec) + torch.einsum("iax,i->ax", dcndr, chain)
            result.sigma = 0.5 * torch.einsum("kxy,k->xy", dadL, qvec) + torch.einsum("ixy,i->xy", dcndL, chain)

        if flags.needs_response:
            dadr = dadr.clone()
            dadL = dadL.clone()
            idx = torch.arange(nat, device=dadr.device)
            dadr[idx, idx] += atrace
            dadr -= dcndr * dxdcn[:nat].view(-1, 1, 1)
            dadL -= dcndL * dxdcn[:nat].view(-1, 1, 1)
            ainv_n = ainv[:nat, :nat]
            result.dqdr = -torch.einsum("kax,ki->iax", dadr, ainv_n)
            result.dqdL = -torch.einsum("kxy,ki->ixy", dadL, ainv_n)

        return result
