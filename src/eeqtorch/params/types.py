from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import torch

Counting = Literal["erf", "exp"]


@dataclass(frozen=True)
class EEQParameters:
    """Per-species EEQ scalars, indexed by atomic number (index 0 unused)."""

    rad: torch.Tensor  # Gaussian charge width
    chi: torch.Tensor  # electronegativity
    eta: torch.Tensor  # chemical hardness
    kcn: torch.Tensor  # CN scaling of the electronegativity

    @property
    def max_number(self) -> int:
        return int(self.chi.shape[0]) - 1

    def to(self, device: torch.device | None = None, dtype: torch.dtype | None = None) -> "EEQParameters":
        return EEQParameters(
            rad=self.rad.to(device=device, dtype=dtype),
            chi=self.chi.to(device=device, dtype=dtype),
            eta=self.eta.to(device=device, dtype=dtype),
            kcn=self.kcn.to(device=device, dtype=dtype),
        )


@dataclass(frozen=True)
class NCoordParameters:
    """Construction-time settings of the coordination-number engine (Bohr)."""

    rcov: torch.Tensor  # covalent radii per atomic number
    counting: Counting = "erf"
    steepness: float = 7.5
    cutoff: float = 25.0
    cn_max: Optional[float] = None
