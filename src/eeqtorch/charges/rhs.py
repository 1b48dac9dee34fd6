from __future__ import annotations

from typing import Optional, Tuple

import torch

from ..params.types import EEQParameters
from ..structure import Structure

Tensor = torch.Tensor

__all__ = ["CN_REG", "get_vrhs"]

# keeps 1/sqrt(CN) finite for isolated atoms
CN_REG = 1.0e-14


def get_vrhs(
    params: EEQParameters,
    mol: Structure,
    cn: Tensor,
    with_derivative: bool = False,
) -> Tuple[Tensor, Optional[Tensor]]:
    """Right-hand side of the augmented EEQ system.

    x_i = −χ_i + κ_i √CN_i (written as κ_i CN_i / √(CN_i + reg)), x_N = Q.
    With `with_derivative`, also dx_i/dCN_i = κ_i / (2 √(CN_i + reg)); the
    Lagrange entry of the derivative is zero.
    """
    nat = mol.nat
    z = mol.numbers
    kcn = params.kcn[z].to(cn)
    chi = params.chi[z].to(cn)
    tmp = kcn / torch.sqrt(cn + CN_REG)
    xvec = cn.new_empty(nat + 1)
    xvec[:nat] = -chi + tmp * cn
    xvec[nat] = mol.charge
    if not with_derivative:
        return xvec, None
    dxdcn = cn.new_zeros(nat + 1)
    dxdcn[:nat] = 0.5 * tmp
    return xvec, dxdcn
