from __future__ import annotations

"""Ewald kernels for Gaussian-smeared charges in a 3D lattice.

The interaction of two Gaussian charges with combined exponent γ at
separation r, summed over all lattice replicas, is split with a second
Gaussian of exponent α:

  Σ_R erf(γ|r+R|)/|r+R|
      = Σ_R [erf(γ|r+R|) − erf(α|r+R|)]/|r+R|                  (direct)
      + (4π/V) Σ_{G≠0} cos(G·r) exp(−G²/(4α²))/G²              (reciprocal)

Both series are truncated to fixed ±2 shells of direct and reciprocal
translations; α is chosen by `get_alpha` so that both tails have decayed
within that depth. Terms with |r+R| below sqrt(machine eps) are skipped.
"""

import logging
import math

import torch

from .cell import cell_volume, get_lattice_points, reciprocal_lattice

Tensor = torch.Tensor

__all__ = [
    "EWALD_REP",
    "get_dir_trans",
    "get_rec_trans",
    "get_alpha",
    "ewald_dir",
    "ewald_rec",
    "ewald_dir_deriv",
    "ewald_rec_deriv",
]

logger = logging.getLogger(__name__)

EWALD_REP = 2
SQRTPI = math.sqrt(math.pi)


def _cutoff(dtype: torch.dtype) -> float:
    return math.sqrt(torch.finfo(dtype).eps)


def get_dir_trans(lattice: Tensor) -> Tensor:
    """Direct-space translations within ±2 cells, origin included."""
    return get_lattice_points(lattice, EWALD_REP, origin=True)


def get_rec_trans(lattice: Tensor) -> Tensor:
    """Reciprocal-space vectors within ±2 cells, G = 0 excluded."""
    return get_lattice_points(reciprocal_lattice(lattice), EWALD_REP, origin=False)


def _dir_tail(lengths: Tensor, alpha: float) -> float:
    return float(torch.sum(torch.erfc(alpha * lengths) / lengths))


def _rec_tail(g2: Tensor, vol: float, alpha: float) -> float:
    return float(4.0 * math.pi / vol * torch.sum(torch.exp(-0.25 * g2 / (alpha * alpha)) / g2))


def get_alpha(lattice: Tensor, tol: float = 1.0e-10, max_iter: int = 200) -> float:
    """Choose the Ewald splitting parameter α for `lattice`.

    α balances the direct-space tail Σ_{R≠0} erfc(α|R|)/|R| against the
    reciprocal-space tail (4π/V) Σ_{G≠0} exp(−G²/4α²)/G² over the ±2 shell
    translations. The difference is monotonically decreasing in α, its root
    is found by bisection on log α.
    """
    vol = cell_volume(lattice)
    lengths = torch.linalg.vector_norm(get_lattice_points(lattice, EWALD_REP, origin=False), dim=-1)
    g2 = torch.sum(get_rec_trans(lattice) ** 2, dim=-1)
    scale = vol ** (1.0 / 3.0)

    def balance(alpha: float) -> float:
        return _dir_tail(lengths, alpha) - _rec_tail(g2, vol, alpha)

    lo, hi = 1.0e-2 / scale, 1.0e1 / scale
    while balance(lo) < 0.0:
        lo *= 0.5
    while balance(hi) > 0.0:
        hi *= 2.0
    for _ in range(max_iter):
        mid = math.sqrt(lo * hi)
        if balance(mid) > 0.0:
            lo = mid
        else:
            hi = mid
        if hi / lo - 1.0 < tol:
            break
    alpha = math.sqrt(lo * hi)
    logger.debug("Ewald splitting parameter alpha=%.6f (V=%.3f)", alpha, vol)
    return alpha


def ewald_dir(rij: Tensor, gam: Tensor, alpha: float, trans: Tensor) -> Tensor:
    """Direct-space sum Σ_R [erf(γ|r+R|) − erf(α|r+R|)]/|r+R|.

    rij : (...,3) separation vectors
    gam : (...) combined Gaussian exponents (broadcast against rij[..., 0])
    trans : (ntr,3) direct-space translations
    Returns (...).
    """
    vec = rij.unsqueeze(-2) + trans  # (...,ntr,3)
    r1 = torch.linalg.vector_norm(vec, dim=-1)
    mask = r1 >= _cutoff(r1.dtype)
    r1s = torch.where(mask, r1, torch.ones_like(r1))
    g = torch.as_tensor(gam, dtype=r1.dtype, device=r1.device).unsqueeze(-1)
    tmp = (torch.erf(g * r1s) - torch.erf(alpha * r1s)) / r1s
    return torch.sum(torch.where(mask, tmp, torch.zeros_like(tmp)), dim=-1)


def ewald_rec(rij: Tensor, vol: float, alpha: float, trans: Tensor) -> Tensor:
    """Reciprocal-space sum (4π/V) Σ_{G≠0} cos(G·r) exp(−G²/4α²)/G², returns (...)."""
    g2 = torch.sum(trans * trans, dim=-1)  # (ng,)
    keep = g2 >= _cutoff(g2.dtype)
    trans, g2 = trans[keep], g2[keep]
    fac = 4.0 * math.pi / vol * torch.exp(-0.25 * g2 / (alpha * alpha)) / g2
    return torch.cos(rij @ trans.T) @ fac


def ewald_dir_deriv(rij: Tensor, gam: Tensor, alpha: float, trans: Tensor) -> tuple[Tensor, Tensor]:
    """Gradient and strain derivative of `ewald_dir`.

    With f(r) = [erf(γr) − erf(αr)]/r, each replica contributes
    dg = (f'(r)/r) v and ds = (f'(r)/r) v⊗v for v = r_ij + R.
    Returns (dg, ds) with shapes (...,3) and (...,3,3).
    """
    vec = rij.unsqueeze(-2) + trans  # (...,ntr,3)
    r1 = torch.linalg.vector_norm(vec, dim=-1)
    mask = r1 >= _cutoff(r1.dtype)
    r1s = torch.where(mask, r1, torch.ones_like(r1))
    r2 = r1s * r1s
    g = torch.as_tensor(gam, dtype=r1.dtype, device=r1.device).unsqueeze(-1)
    gtmp = 2.0 * g * torch.exp(-r2 * g * g) / (SQRTPI * r2) - torch.erf(r1s * g) / (r2 * r1s)
    atmp = -2.0 * alpha * torch.exp(-r2 * alpha * alpha) / (SQRTPI * r2) + torch.erf(r1s * alpha) / (r2 * r1s)
    w = torch.where(mask, gtmp + atmp, torch.zeros_like(r1))
    dg = torch.sum(w.unsqueeze(-1) * vec, dim=-2)
    ds = torch.einsum("...t,...ti,...tj->...ij", w, vec, vec)
    return dg, ds


def ewald_rec_deriv(rij: Tensor, vol: float, alpha: float, trans: Tensor) -> tuple[Tensor, Tensor]:
    """Gradient and strain derivative of `ewald_rec`.

    dg = −Σ_G e_G sin(G·r) G,
    ds = Σ_G e_G cos(G·r) [(2/G² + 1/(2α²)) G⊗G − I],
    with e_G = (4π/V) exp(−G²/4α²)/G². The −I term is the volume change.
    """
    g2 = torch.sum(trans * trans, dim=-1)
    keep = g2 >= _cutoff(g2.dtype)
    trans, g2 = trans[keep], g2[keep]
    etmp = 4.0 * math.pi / vol * torch.exp(-0.25 * g2 / (alpha * alpha)) / g2  # (ng,)
    gv = rij @ trans.T  # (...,ng)
    dg = -(torch.sin(gv) * etmp) @ trans
    unity = torch.eye(3, dtype=trans.dtype, device=trans.device)
    gg = (2.0 / g2 + 0.5 / (alpha * alpha)).view(-1, 1, 1) * torch.einsum("gi,gj->gij", trans, trans) - unity
    ds = torch.tensordot(torch.cos(gv) * etmp, gg, dims=([gv.ndim - 1], [0]))
    return dg, ds
