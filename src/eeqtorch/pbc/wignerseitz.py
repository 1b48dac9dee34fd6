from __future__ import annotations

"""Wigner–Seitz minimum-image bookkeeping for periodic pair sums.

For every ordered pair (i, j) the translations T that minimise
|r_i − r_j − T| are collected. The pair vector is first reduced to the
reference cell by an integer lattice offset, so atoms given outside the cell
(any number of lattice vectors away) find the same images as wrapped ones.
Atoms sitting on a boundary of the Wigner–Seitz cell of their partner have
several equally short images; pair terms are then averaged over all of them
with weight 1/nimg instead of picking one arbitrarily.
"""

from dataclasses import dataclass
import logging

import torch

from .cell import get_lattice_points, to_cart, to_frac

Tensor = torch.Tensor

__all__ = ["WignerSeitzCell"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WignerSeitzCell:
    nimg: Tensor   # (nat,nat) number of minimum images per ordered pair
    tridx: Tensor  # (nat,nat,max_img) indices into trans, valid up to nimg
    trans: Tensor  # (ntr,3) shared translation table
    shift: Tensor  # (nat,nat,3) lattice offset reducing r_i - r_j to the reference cell

    @classmethod
    def new(cls, positions: Tensor, lattice: Tensor, rep: int = 2, tol: float = 1.0e-6) -> "WignerSeitzCell":
        """Build the minimum-image table for `positions` in `lattice` (rows are lattice vectors).

        Images within `tol` (Bohr) of the shortest distance count as ties.
        `rep` bounds the translations searched around the reduced pair vector.
        """
        trans = get_lattice_points(lattice, rep, origin=True)
        vec = positions.unsqueeze(1) - positions.unsqueeze(0)  # (nat,nat,3), r_i - r_j
        shift = to_cart(torch.round(to_frac(vec, lattice)), lattice)
        dist = torch.linalg.vector_norm((vec - shift).unsqueeze(-2) - trans, dim=-1)  # (nat,nat,ntr)
        dmin = dist.min(dim=-1, keepdim=True).values
        ties = dist <= dmin + tol
        nimg = ties.sum(dim=-1)
        max_img = int(nimg.max().item()) if nimg.numel() > 0 else 1
        order = torch.argsort(ties.to(torch.int8), dim=-1, descending=True, stable=True)
        tridx = order[..., :max_img]
        logger.debug("Wigner-Seitz cell: ntr=%d, max images per pair=%d", trans.shape[0], max_img)
        return cls(nimg=nimg, tridx=tridx, trans=trans, shift=shift)

    def pair_translations(self, rows: Tensor) -> Tensor:
        """(b,nat,max_img,3) full image translations of the pairs (i∈rows, j)."""
        return self.trans[self.tridx[rows]] + self.shift[rows].unsqueeze(-2)

    def self_translations(self, rows: Tensor) -> Tensor:
        """(b,max_img,3) image translations of each atom in `rows` with itself."""
        return self.trans[self.tridx[rows, rows]] + self.shift[rows, rows].unsqueeze(-2)

    def images(self, i: int, j: int) -> Tensor:
        """Minimum-image translations (nimg,3) for the ordered pair (i, j)."""
        n = int(self.nimg[i, j])
        return self.trans[self.tridx[i, j, :n]] + self.shift[i, j]

    def weights(self) -> Tensor:
        """(nat,nat,max_img) image weights 1/nimg, zero for padding slots."""
        max_img = self.tridx.shape[-1]
        slot = torch.arange(max_img, device=self.nimg.device)
        valid = slot < self.nimg.unsqueeze(-1)
        return valid.to(self.trans.dtype) / self.nimg.unsqueeze(-1).to(self.trans.dtype)
