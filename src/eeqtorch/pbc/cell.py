from __future__ import annotations

import math
from typing import Sequence

import torch

__all__ = [
    "to_cart",
    "to_frac",
    "cell_volume",
    "reciprocal_lattice",
    "get_lattice_points",
    "build_lattice_translations",
]


def to_cart(frac: torch.Tensor, cell: torch.Tensor) -> torch.Tensor:
    """Convert fractional to Cartesian coordinates, rows of `cell` are lattice vectors."""
    return frac @ cell


def to_frac(cart: torch.Tensor, cell: torch.Tensor) -> torch.Tensor:
    """Convert Cartesian to fractional coordinates."""
    return cart @ torch.linalg.inv(cell)


def cell_volume(cell: torch.Tensor) -> float:
    return abs(float(torch.det(cell)))


def reciprocal_lattice(cell: torch.Tensor) -> torch.Tensor:
    """Reciprocal lattice vectors as rows, B = 2π (A⁻¹)ᵀ so that a_i·b_j = 2π δ_ij."""
    return 2.0 * math.pi * torch.linalg.inv(cell).T


def _integer_grid(rep: Sequence[int], device, dtype) -> torch.Tensor:
    axes = [torch.arange(-int(n), int(n) + 1, device=device, dtype=dtype) for n in rep]
    grid = torch.meshgrid(*axes, indexing="ij")
    return torch.stack([g.reshape(-1) for g in grid], dim=-1)  # (ntr,3)


def get_lattice_points(lattice: torch.Tensor, rep: int | Sequence[int] = 2, origin: bool = True) -> torch.Tensor:
    """Enumerate n1 a1 + n2 a2 + n3 a3 for |n_k| <= rep_k.

    Returns a (ntr,3) tensor. The zero vector is kept only when ``origin`` is True.
    """
    if isinstance(rep, int):
        rep = (rep, rep, rep)
    ijk = _integer_grid(rep, lattice.device, lattice.dtype)
    if not origin:
        ijk = ijk[(ijk != 0).any(dim=-1)]
    return ijk @ lattice


def build_lattice_translations(
    cutoff: float,
    cell: torch.Tensor,
    periodic: Sequence[bool] | torch.Tensor = (True, True, True),
) -> torch.Tensor:
    """Lattice translations R with |R| <= cutoff, including the origin.

    Index ranges per direction are bounded by the distance between lattice planes,
    non-periodic directions are not replicated. Returns (ntr,3) sorted by |R|.
    """
    if cutoff <= 0:
        raise ValueError("cutoff must be > 0")
    # plane spacing d_k = 2π / |b_k|
    rec = reciprocal_lattice(cell)
    spacing = 2.0 * math.pi / torch.linalg.vector_norm(rec, dim=-1)
    per = [bool(p) for p in torch.as_tensor(periodic).tolist()]
    rep = [int(math.ceil(cutoff / max(float(d), 1e-15))) if p else 0 for d, p in zip(spacing, per)]
    trans = _integer_grid(rep, cell.device, cell.dtype) @ cell
    norm = torch.linalg.vector_norm(trans, dim=-1)
    keep = norm <= cutoff + 1e-12
    trans, norm = trans[keep], norm[keep]
    return trans[torch.argsort(norm, stable=True)]
